"""
Knowledge Graph Prompts

All prompts for artifact extraction, relationship extraction and merge
adjudication, centralized in one place for easy maintenance.
"""

DEFAULT_CATEGORIES = {
    "characters": "People, creatures and other beings that act in the story, named or described.",
    "locations": "Places in the world: regions, cities, buildings, rooms, planes.",
    "items": "Objects of note: weapons, artifacts, documents, treasure, tools.",
    "events": "Things that happened or will happen: battles, meetings, rituals, discoveries.",
}


def format_categories(categories: dict) -> str:
    return "\n".join(f"- {name}: {description}" for name, description in categories.items())


# NAE: Note Artifact Extraction
ARTIFACT_EXTRACTION_PROMPT = """
You extract narrative entities ("artifacts") from a role-playing campaign note.

CATEGORIES:
{categories}

RULES:
- Only extract entities the note actually mentions.
- Use the most complete proper name the note gives as "name".
- "category" must be one of the category names above.
- "short_description" is one sentence; "description" collects everything the note says about the entity.

Return ONLY a JSON object of this exact shape:
{{"artifacts": [{{"name": "...", "category": "...", "short_description": "...", "description": "..."}}]}}

NOTE TITLE: {title}

NOTE:
{content}
"""

# ARE: Artifact Relationship Extraction
RELATIONSHIP_EXTRACTION_PROMPT = """
You find relationships between narrative entities of a role-playing campaign.

KNOWN ARTIFACTS (use these names exactly for "source" and "target"):
{artifacts}

RULES:
- Only report relationships the note states or clearly implies.
- "label" is a short verb phrase, e.g. "owns", "located in", "allied with".
- "reasoning" cites the part of the note that supports the relationship.

Return ONLY a JSON object of this exact shape:
{{"relationships": [{{"source": "...", "target": "...", "label": "...", "description": "...", "reasoning": "..."}}]}}

NOTE:
{content}
"""

ARTIFACT_ADJUDICATION_PROMPT = """
Decide whether a newly extracted campaign artifact denotes the same real-world
entity as any of the existing artifacts below. Names may differ (nicknames,
titles, partial names); descriptions may add new facts. Different entities
that merely share a role are NOT the same.

NEW ARTIFACT:
{new_item}

EXISTING ARTIFACTS:
{candidates}

For EVERY existing artifact return a verdict. "confidence" is 0-100 and
expresses how sure you are of the verdict that they are the same entity.

Return ONLY a JSON object of this exact shape:
{{"judgements": [{{"candidate_id": "...", "is_same": true, "confidence": 0, "reasoning": "..."}}]}}
"""

RELATIONSHIP_ADJUDICATION_PROMPT = """
Decide whether a newly extracted relationship between campaign artifacts
states the same fact as any of the existing relationships below. Wording of
the label may differ; direction and endpoints must match in meaning.

NEW RELATIONSHIP:
{new_item}

EXISTING RELATIONSHIPS:
{candidates}

For EVERY existing relationship return a verdict. "confidence" is 0-100.

Return ONLY a JSON object of this exact shape:
{{"judgements": [{{"candidate_id": "...", "is_same": true, "confidence": 0, "reasoning": "..."}}]}}
"""

NO_HISTORY = "No historical notes available"
