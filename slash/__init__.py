"""An embeddable slash-command scripting language: parser and async closure interpreter."""

__version__ = "0.1.0"
