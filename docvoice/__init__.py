"""DocVoice: converts uploaded government documents into narrated audio."""

__version__ = "1.0.0"
