"""
Deterministic cache fingerprints for pipeline results.

Key shape: ``prefix:pipelineType:patientId:promptVersion[:sessionId][:hash8]``
where ``hash8`` is the first 8 hex chars of SHA-256 over the variables
serialized as JSON with sorted keys.
"""

import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

_HASH8 = re.compile(r"^[0-9a-f]{8}$")


@dataclass(frozen=True)
class ParsedCacheKey:
    prefix: str
    pipeline_type: str
    patient_id: str
    prompt_version: str
    session_id: Optional[str] = None
    variables_hash: Optional[str] = None


def hash_variables(variables: Dict[str, Any]) -> str:
    canonical = json.dumps(variables, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:8]


class CacheKeyGenerator:
    """Builds, parses and pattern-matches cache keys."""

    def __init__(self, prefix: str = "ai") -> None:
        self.prefix = prefix

    def generate(
        self,
        pipeline_type: str,
        patient_id: str,
        prompt_version: str,
        session_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> str:
        parts = [self.prefix, str(pipeline_type), patient_id, prompt_version]
        if session_id:
            parts.append(session_id)
        if variables:
            parts.append(hash_variables(variables))
        return ":".join(parts)

    def generate_pattern(
        self,
        pipeline_type: Optional[str] = None,
        patient_id: Optional[str] = None,
        prompt_version: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        """Glob pattern with ``*`` for every omitted field."""
        parts = [
            self.prefix,
            str(pipeline_type) if pipeline_type else "*",
            patient_id or "*",
            prompt_version or "*",
        ]
        if session_id:
            parts.append(session_id)
        return ":".join(parts) + "*"

    def parse_key(self, key: str) -> Optional[ParsedCacheKey]:
        parts = key.split(":")
        if len(parts) < 4 or len(parts) > 6 or parts[0] != self.prefix:
            return None

        prefix, pipeline_type, patient_id, prompt_version = parts[:4]
        session_id = None
        variables_hash = None
        if len(parts) == 6:
            session_id, variables_hash = parts[4], parts[5]
        elif len(parts) == 5:
            # a bare 8-hex suffix is read as the variables hash
            if _HASH8.match(parts[4]):
                variables_hash = parts[4]
            else:
                session_id = parts[4]

        return ParsedCacheKey(
            prefix, pipeline_type, patient_id, prompt_version, session_id, variables_hash
        )
