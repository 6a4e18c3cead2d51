"""
Notes Module

Campaign note intake and read API on top of the knowledge graph pipeline.

Components:
- service: NoteService for validation, task bookkeeping and queries
- worker_pool: NoteWorkerPool, bounded background processing
- dependencies: wiring of pipeline components from settings
- routes: API endpoints under /campaigns/{campaign_uuid}
"""
