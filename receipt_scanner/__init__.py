"""
Receipt scanner
Live receipt boundary detection with stability-based auto-capture.

Layers:
  layer1_auto_capture/  - Camera session, detection, stability tracking, capture state machine
  layer2_readjustment/  - Perspective correction of captured stills
"""
__version__ = "1.0.0"
