from .multiplexer import RegistryUpstreamSource, StreamMultiplexer

__all__ = ["RegistryUpstreamSource", "StreamMultiplexer"]
