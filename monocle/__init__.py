"""monocle: Swift symbol inspection backed by SourceKit-LSP."""

__version__ = "0.4.0"
