"""Tests for graph label and relationship type naming."""

import pytest

from knowledge_graph.graph_store import campaign_label, sanitize_identifier

KRYNN = "5f1c7a52-9d1e-4c1a-8d7e-2b7d1f0c9a11"
TAMRIEL = "0b7e3f6a-41c2-4d8e-9a35-6c1f2e8d7b40"


def test_campaigns_sharing_a_graph_label_get_distinct_node_labels():
    assert campaign_label(KRYNN, "Krynn") != campaign_label(TAMRIEL, "Krynn")


def test_named_label_keeps_name_and_campaign_id():
    assert campaign_label(KRYNN, "Krynn") == "Krynn_5f1c7a529d1e4c1a8d7e2b7d1f0c9a11_Artifact"


def test_unnamed_campaign_falls_back_to_id():
    assert campaign_label(TAMRIEL) == "Campaign_0b7e3f6a41c24d8e9a356c1f2e8d7b40_Artifact"


@pytest.mark.parametrize("graph_label, expected_prefix", [
    ("Dragons of Krynn!", "Dragons_of_Krynn_"),
    ("  --Krynn--  ", "Krynn_"),
    ("3rd Age", "C_3rd_Age_"),
])
def test_label_is_a_safe_identifier(graph_label, expected_prefix):
    label = campaign_label(KRYNN, graph_label)

    assert label.startswith(expected_prefix)
    assert label.endswith("_Artifact")
    assert all(c.isalnum() or c == "_" for c in label)


@pytest.mark.parametrize("value, expected", [
    ("friend of", "FRIEND_OF"),
    ("works-for", "WORKS_FOR"),
    ("", "RELATED_TO"),
    ("???", "RELATED_TO"),
    ("2nd cousin", "_2ND_COUSIN"),
])
def test_sanitize_identifier(value, expected):
    assert sanitize_identifier(value) == expected
