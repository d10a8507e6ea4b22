"""snipbench: measure small Python snippets across interpreter environments."""

__version__ = "0.1.0"
