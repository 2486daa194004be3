"""Context graph: runtime, program and account nodes."""
