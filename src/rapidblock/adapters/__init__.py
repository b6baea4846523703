"""Storage backends and file loaders that plug into the core ports."""
