"""
VirtualKey - portable WebAuthn credential containers

Virtual hardware keys are disk images, optionally encrypted, each holding
one embedded credential store:
- Container provisioning through the system disk-image utility
- Rate-limited access to embedded credential stores
- Credential export/import with duplicate detection
- Byte-exact COSE, authenticator data and attestation encoding
"""

__version__ = "1.0.0"

from virtualkey.core.config import VirtualKeyConfig
from virtualkey.main import VirtualKeyServices, build_services

__all__ = ["VirtualKeyConfig", "VirtualKeyServices", "build_services", "__version__"]
