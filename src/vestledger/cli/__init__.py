"""vestledger command-line interface."""
