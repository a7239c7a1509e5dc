"""Framing, spectral transform, batching, reconstruction and audio I/O."""
