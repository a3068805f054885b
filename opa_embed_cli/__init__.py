"""Command line tooling for opa-embed."""
