"""SkaGallery - Discord media gallery archiver with upload statistics."""

__version__ = "0.1.0"
