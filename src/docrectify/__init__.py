"""
Document Rectification Pipeline
===============================

Local image pipeline that straightens photographed documents.
Turns a phone photo of printed content into a clean, cropped scan.

Main components:
- Content region detection and skew estimation
- Rectification (crop + rotate onto white)
- Shadow removal and scan filter
- White border trimming
- Interactive crop/rotate geometry
"""

__version__ = "1.0.0"
__author__ = "Document Rectification Team"
