"""
Evaluation context — the business record a recommendation set is computed for.

``Context`` is a tagged union: ``context_type`` is the discriminant and
``attributes`` is a generic key/value bag whose per-type schema is documented
by the rule configuration but not enforced here (validation lives at the
boundary that builds the context).

A ``Context`` is frozen: it is an immutable snapshot for the duration of one
evaluation.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_MISSING = object()


class Context(BaseModel):
    """Immutable snapshot of the record being evaluated.

    Attributes:
        context_type:     Discriminant, e.g. ``"opportunity"`` or ``"case"``.
        context_id:       Identifier of the record.
        related_ids:      Named references to related records
                          (``{"account": "001..."}``).  ``related_ids["customer"]``
                          becomes the recommendation's customer reference.
        attributes:       Context-relevant field values.
        user_role:        Role of the user the recommendations are for.
        signal_overrides: Named numeric signals supplied by the caller, read by
                          the ``signal_boost`` modifier.
        version_hash:     Caller-supplied hash of context-relevant fields.  When
                          omitted, ``context_version_hash()`` derives one.
    """

    model_config = ConfigDict(frozen=True)

    context_type: str
    context_id: str
    related_ids: dict[str, str] = Field(default_factory=dict)
    attributes: dict[str, Any] = Field(default_factory=dict)
    user_role: str = "default"
    signal_overrides: dict[str, float] = Field(default_factory=dict)
    version_hash: Optional[str] = None

    @field_validator("context_type", "context_id")
    @classmethod
    def non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("context_type and context_id must be non-empty.")
        return v

    def context_version_hash(self) -> str:
        """Return the hash identifying this version of the context's relevant fields."""
        if self.version_hash:
            return self.version_hash
        payload = json.dumps(
            {
                "related_ids": self.related_ids,
                "attributes": self.attributes,
                "signal_overrides": self.signal_overrides,
            },
            sort_keys=True,
            default=str,
            separators=(",", ":"),
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]

    @property
    def customer_ref(self) -> Optional[str]:
        return self.related_ids.get("customer") or self.related_ids.get("account")

    def lookup(self, path: str, default: Any = _MISSING) -> Any:
        """Resolve a field path against this context.

        Path resolution:
          ``user_role`` / ``context_type`` / ``context_id`` — top-level fields.
          ``related_ids.<key>``                            — related record ids.
          ``signals.<key>``                                — signal overrides.
          anything else                                    — dotted path into
                                                             ``attributes``.

        Raises:
            KeyError: If the path does not resolve and no ``default`` is given.
        """
        if path in ("user_role", "context_type", "context_id"):
            return getattr(self, path)

        head, _, rest = path.partition(".")
        if head == "related_ids" and rest:
            current: Any = self.related_ids
            parts = [rest]
        elif head == "signals" and rest:
            current = self.signal_overrides
            parts = [rest]
        else:
            current = self.attributes
            parts = path.split(".")

        for part in parts:
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                if default is _MISSING:
                    raise KeyError(path)
                return default
        return current
