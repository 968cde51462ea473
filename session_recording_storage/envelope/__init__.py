"""
Event envelope model and its line-delimited codec.
"""

from .codec import (
    LINE_DELIMITER,
    DecodedObject,
    decode,
    decode_object,
    encode,
    encode_batch,
    encoded_size,
)
from .types import MAX_SAFE_SEQUENCE, EventEnvelope, sequence_problem, session_id_problem

__all__ = [
    # Model
    "EventEnvelope",
    "MAX_SAFE_SEQUENCE",
    "session_id_problem",
    "sequence_problem",
    # Codec
    "LINE_DELIMITER",
    "DecodedObject",
    "encode",
    "encode_batch",
    "encoded_size",
    "decode",
    "decode_object",
]
