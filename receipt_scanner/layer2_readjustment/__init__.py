"""
Layer 2 — Image Readjustment
Perspective correction of captured stills before handing them downstream
"""
from .processor import DocumentProcessor, PreparedDocument

__all__ = ['DocumentProcessor', 'PreparedDocument']
