"""
Payload codecs for ChronoGenomics.

A codec turns a plaintext submission into the opaque blob that gets stored and
back again. Only the analysis step is expected to call ``decode``; the record
store never inspects encoded payloads.
"""

import base64
import binascii
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from chronogenomics.errors import MalformedRecord


class PayloadCodec(ABC):
    """Capability boundary between plaintext submissions and stored blobs."""

    @abstractmethod
    def encode(self, plaintext: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Encode a marker sequence and its metadata into an opaque string."""

    @abstractmethod
    def decode(self, encoded: str) -> Dict[str, Any]:
        """Recover the submission fields from an encoded payload."""


class SimulatedFHECodec(PayloadCodec):
    """
    Stand-in for a homomorphic encryption scheme.

    The payload is base64-encoded JSON behind an ``FHE-DNA-`` prefix. This gives
    NO confidentiality; swap in a real privacy-preserving codec for production use.
    """

    prefix = "FHE-DNA-"

    def encode(self, plaintext: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        document = {"dnaSequence": plaintext}
        document.update(metadata or {})
        blob = base64.b64encode(json.dumps(document).encode('utf-8')).decode('ascii')
        return f"{self.prefix}{blob}"

    def decode(self, encoded: str) -> Dict[str, Any]:
        if not encoded.startswith(self.prefix):
            raise MalformedRecord("payload", f"missing {self.prefix} prefix")

        try:
            raw = base64.b64decode(encoded[len(self.prefix):], validate=True)
            document = json.loads(raw.decode('utf-8'))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedRecord("payload", f"cannot decode: {e}") from e

        if not isinstance(document, dict):
            raise MalformedRecord("payload", "decoded payload is not an object")
        return document
