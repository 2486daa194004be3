"""Transaction assembly, signing, execution and result parsing."""
