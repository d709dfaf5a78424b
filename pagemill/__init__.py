"""pagemill: render web pages, isolate their content and mill it into Markdown."""

__version__ = "0.3.0"
