"""
Field Sealing

Turns ledger entities into records whose sensitive fields are encrypted
blobs, and whole canonical states into one encrypted payload.

WHAT IS SEALED:
- Account: name, current_balance, opening_balance
- Category: name
- Transaction: amount, description
- Plan: name, monthly_limit

Identifiers, references, category types and timestamps stay public
inside the record; they are still covered by the payload encryption
whenever a record travels to the remote.

ENCODING: strings are UTF-8, integers are 16-byte little-endian signed
values. Amounts are bounded to 64 bits; the wider encoding leaves room
for balances, which sum them.
"""

import base64
import json
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ledger_sync.crypto.cipher import CryptoError, LedgerCipher
from ledger_sync.models.ledger import (
    ENTITY_TYPES,
    MERGE_ORDER,
    EntityKind,
    LedgerEntity,
    LedgerState,
)
from ledger_sync.models.sync import CanonicalState, MergedRound


SEALED_FIELDS: dict[EntityKind, dict[str, type]] = {
    EntityKind.ACCOUNT: {
        "name": str,
        "current_balance": int,
        "opening_balance": int,
    },
    EntityKind.CATEGORY: {
        "name": str,
    },
    EntityKind.TRANSACTION: {
        "amount": int,
        "description": str,
    },
    EntityKind.PLAN: {
        "name": str,
        "monthly_limit": int,
    },
}

INT_SIZE = 16
DOCUMENT_VERSION = 1


def encode_value(value: Any) -> bytes:
    """Binary form of a sealed field value."""
    if isinstance(value, bool):
        raise TypeError("Booleans are not sealed field values")
    if isinstance(value, int):
        return value.to_bytes(INT_SIZE, "little", signed=True)
    if isinstance(value, str):
        return value.encode("utf-8")
    raise TypeError(f"Cannot seal value of type {type(value).__name__}")


def decode_value(raw: bytes, value_type: type) -> Any:
    """Inverse of encode_value."""
    if value_type is int:
        if len(raw) != INT_SIZE:
            raise CryptoError(f"Sealed integer has {len(raw)} bytes, expected {INT_SIZE}")
        return int.from_bytes(raw, "little", signed=True)
    return raw.decode("utf-8")


class SealedRecord(BaseModel):
    """An entity with its sensitive fields encrypted."""

    id: int
    public: dict[str, Any] = Field(
        default_factory=dict,
        description="Fields stored in the clear (references, types, timestamps)"
    )
    sealed: dict[str, str] = Field(
        default_factory=dict,
        description="Encrypted fields, base64-encoded"
    )

    def blob(self, field_name: str) -> bytes:
        return base64.b64decode(self.sealed[field_name])


class SealedEntitySet(BaseModel):
    """Sealed counterpart of an EntitySet."""

    active: list[SealedRecord] = Field(default_factory=list)
    removed: list[int] = Field(default_factory=list)


class SealedDocument(BaseModel):
    """What travels inside the encrypted canonical payload."""

    format_version: int = DOCUMENT_VERSION
    sets: dict[EntityKind, SealedEntitySet] = Field(default_factory=dict)
    counters: dict[EntityKind, int] = Field(default_factory=dict)
    acknowledged: dict[str, MergedRound] = Field(default_factory=dict)


class FieldSealer:
    """Seals and opens single entities field by field."""

    def __init__(self, cipher: LedgerCipher):
        self._cipher = cipher

    def seal_value(self, value: Any) -> bytes:
        return self._cipher.encrypt_field(encode_value(value))

    def open_value(self, blob: bytes, value_type: type) -> Any:
        return decode_value(self._cipher.decrypt_field(blob), value_type)

    def seal(self, item: LedgerEntity) -> SealedRecord:
        sealed_fields = SEALED_FIELDS[item.KIND]
        public = item.model_dump(mode="json", exclude={"id", *sealed_fields})
        sealed = {
            name: base64.b64encode(self.seal_value(getattr(item, name))).decode("ascii")
            for name in sealed_fields
        }
        return SealedRecord(id=item.id, public=public, sealed=sealed)

    def open(self, kind: EntityKind, record: SealedRecord) -> LedgerEntity:
        """
        Decrypt a record back into an entity.

        Raises:
            AuthenticationFailedError: If any field fails its integrity check
            CryptoError: If the record is structurally invalid
        """
        values = dict(record.public)
        try:
            for name, value_type in SEALED_FIELDS[kind].items():
                values[name] = self.open_value(record.blob(name), value_type)
            return ENTITY_TYPES[kind].model_validate({"id": record.id, **values})
        except (KeyError, ValueError) as e:
            # ValidationError and UnicodeDecodeError are ValueErrors
            raise CryptoError(f"Malformed sealed {kind.value} {record.id}: {e}") from e


class StateSealer:
    """
    Seals whole ledgers and canonical states.

    seal_state/open_state produce and consume the opaque blob that the
    remote stores; the remote never sees anything else.
    """

    def __init__(self, cipher: LedgerCipher):
        self._cipher = cipher
        self._fields = FieldSealer(cipher)

    @property
    def fields(self) -> FieldSealer:
        return self._fields

    def seal_ledger(self, ledger: LedgerState) -> dict[EntityKind, SealedEntitySet]:
        return {
            kind: SealedEntitySet(
                active=[self._fields.seal(item) for item in ledger.of(kind).sorted_active()],
                removed=sorted(ledger.of(kind).removed),
            )
            for kind in MERGE_ORDER
        }

    def open_ledger(self, sets: dict[EntityKind, SealedEntitySet]) -> LedgerState:
        ledger = LedgerState()
        for kind in MERGE_ORDER:
            sealed_set = sets.get(kind, SealedEntitySet())
            target = ledger.of(kind)
            target.removed.update(sealed_set.removed)
            for record in sealed_set.active:
                item = self._fields.open(kind, record)
                if item.id in target.removed:
                    raise CryptoError(f"Sealed {kind.value} {item.id} is both active and removed")
                target.put(item)
        return ledger

    def seal_state(self, state: CanonicalState) -> bytes:
        """Serialize and encrypt a canonical state for upload."""
        document = SealedDocument(
            sets=self.seal_ledger(state.ledger),
            counters=state.counters,
            acknowledged=state.acknowledged,
        )
        return self._cipher.encrypt_payload(document.model_dump_json().encode("utf-8"))

    def open_state(self, payload: bytes) -> CanonicalState:
        """
        Decrypt and deserialize a canonical state.

        Raises:
            AuthenticationFailedError: Wrong password or tampered payload
            CryptoError: Payload decrypted but is not a canonical document
        """
        document = self._open_document(payload)
        return CanonicalState(
            ledger=self.open_ledger(document.sets),
            counters=document.counters,
            acknowledged=document.acknowledged,
        )

    def seal_ledger_bytes(self, ledger: LedgerState) -> bytes:
        """Encrypt a bare ledger (used for locally kept snapshots)."""
        document = SealedDocument(sets=self.seal_ledger(ledger))
        return self._cipher.encrypt_payload(document.model_dump_json().encode("utf-8"))

    def open_ledger_bytes(self, payload: bytes) -> LedgerState:
        return self.open_ledger(self._open_document(payload).sets)

    def _open_document(self, payload: bytes) -> SealedDocument:
        plaintext = self._cipher.decrypt_payload(payload)
        try:
            document = SealedDocument.model_validate_json(plaintext)
        except (ValidationError, json.JSONDecodeError) as e:
            raise CryptoError(f"Payload is not a sealed ledger document: {e}") from e
        if document.format_version != DOCUMENT_VERSION:
            raise CryptoError(f"Unsupported document version: {document.format_version}")
        return document
