"""Catalog services.

- registry_cache / text_normalizer / similarity: pure extraction and scoring
  over an explicit registry snapshot
- matching / consistency / cleanup / price_history: catalog writes; each
  takes a session or session factory from the caller
- unmappable / registry_admin / jobs: admin surface and batch entry points
"""
