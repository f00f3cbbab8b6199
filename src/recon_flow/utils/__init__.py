"""Utility modules for ReconFlow."""

from .auth import AuthManager, UserProfile
from .session import SessionStore
from .image_processor import ImageProcessor
