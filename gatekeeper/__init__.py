"""
Gatekeeper - account authentication and session management.
"""

__version__ = "0.1.0"
