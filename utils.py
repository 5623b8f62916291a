import hashlib
import hmac
import json
from typing import Any, Dict, Optional

def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"),
                      ensure_ascii=False, allow_nan=False)

def compute_hash(data: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of ``data``.

    Mappings are serialized with sorted keys, so two payloads that differ only
    in key insertion order hash identically. Raises ``TypeError`` or
    ``ValueError`` for values JSON cannot represent (sets, NaN, ...).
    """
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()

def verify_hash(data: Any, expected_hash: Any) -> bool:
    if not isinstance(expected_hash, str):
        return False
    try:
        actual = compute_hash(data).encode("utf-8")
        expected = expected_hash.encode("utf-8")
    except (TypeError, ValueError):
        return False
    return hmac.compare_digest(actual, expected)

def sealing_payload(batch_id: str, actor_role: str, payload: Dict[str, Any],
                    latitude: Optional[float], longitude: Optional[float],
                    timestamp: int) -> Dict[str, Any]:
    return {
        "batch_id": batch_id,
        "actor_role": actor_role,
        "payload": payload,
        "location": {"latitude": latitude, "longitude": longitude},
        "timestamp": timestamp,
    }
