from __future__ import annotations

import cbor2


def encode(obj) -> bytes:
    # Canonical form keeps map key order stable across peers.
    return cbor2.dumps(obj, canonical=True)


def decode(b: bytes):
    if not isinstance(b, (bytes, bytearray, memoryview)):
        raise TypeError("payload must be bytes")
    return cbor2.loads(bytes(b))
