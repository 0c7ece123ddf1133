"""HTTP API for the karaoke queue."""
