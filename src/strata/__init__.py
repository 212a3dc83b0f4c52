"""strata — a decaying, weighted memory graph for long-lived agents.

Layout:
    strata/
    ├── graph/          # store, decay, resolver, consolidation, recall, procedures, snapshots
    ├── embeddings/     # pluggable embedding providers (mock / ollama / openai)
    ├── extract.py      # default markdown extractor (frontmatter + headings)
    ├── config.py       # strata.toml + environment configuration
    └── errors.py       # NotFound / ValidationError / ProviderError / ConfigurationError
"""

__version__ = "0.3.0"
