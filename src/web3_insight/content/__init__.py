"""Content store: articles, categories, data sources and similarity search."""
