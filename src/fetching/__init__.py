"""Package content transport and integrity primitives."""
