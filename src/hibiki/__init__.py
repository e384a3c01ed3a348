"""hibiki: chat template compiler, response parser and sampling boundary for llama.cpp."""

__version__ = "0.3.0"
