"""Practice/interview session engine: evaluation, selection, credits, visibility and lifecycle."""
