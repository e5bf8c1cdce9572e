from . import audio, generation

__all__ = ["audio", "generation"]
