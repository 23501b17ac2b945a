"""reqdoc - run the HTTP requests written in .http files and Markdown docs."""

__version__ = "0.1.0"
