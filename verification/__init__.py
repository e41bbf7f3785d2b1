"""
KYC Intake Service

This package contains the building blocks of the remote identity intake flow:
- Token issuance and single-use lifecycle enforcement
- Dual-path image preprocessing (stored copy vs. OCR raster)
- OCR invocation and heuristic field extraction
- The step-by-step verification session driver
- Artifact upload and final submission
"""

__version__ = "1.0.0"
