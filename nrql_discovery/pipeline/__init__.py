"""Query pipeline building blocks: caching, estimation and capability probing."""
