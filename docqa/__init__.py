"""Multi-tenant retrieval-augmented question answering over uploaded documents and emails.

Submodules overview:
- service: DocQAService facade (ingest, search, answer, delete, clear).
- config: Application settings and per-component configuration objects.
- errors: Exception taxonomy shared by all components.
- models: Dataclasses for chunks, hits, document groups and context bundles.
- schemas: Pydantic request/response models for the pipeline boundaries.
- chunking: Boundary-aware overlapping text chunker.
- embedding: OpenAI embedding client with batching and error translation.
- vector_store: Vector store protocols and the Chroma implementation.
- store_manager: Tenant collections, validated inserts, deletes.
- router: Heuristic query classification (expansion and prompt variants).
- retrieval: Semantic search, query expansion, sender re-ranking, grouping.
- budget: Context budgeting and the retry ladder.
- generation: Prompting, completion calls and answer assembly.
- cache: Redis answer cache with per-tenant invalidation.
- ingestion: Ingestion pipeline and the file ingestion CLI.
- obs: Observability utilities (tracing/spans).
- utils: General-purpose helper functions.
"""
