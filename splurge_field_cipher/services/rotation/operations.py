"""Per-record rotation operations."""

from typing import Any, Callable

from splurge_field_cipher.codec import AeadCodec
from splurge_field_cipher.exceptions import ValidationError
from splurge_field_cipher.models import EncryptedEnvelope, FieldRecord, KeyMaterial


def as_field_record(item: Any) -> FieldRecord:
    """Normalize an enumerated item into a FieldRecord.

    Accepts a FieldRecord, a ``(record_id, envelope)`` pair or a
    ``(record_id, field_name, envelope)`` triple.

    Raises:
        ValidationError: If the item has another shape
    """
    if isinstance(item, FieldRecord):
        return item
    if isinstance(item, tuple):
        if len(item) == 2:
            return FieldRecord(record_id=item[0], field_name=None, envelope=item[1])
        if len(item) == 3:
            return FieldRecord(record_id=item[0], field_name=item[1], envelope=item[2])
    raise ValidationError(f"Unsupported record source item: {type(item).__name__}")


def re_encrypt_with_new_key(
    *,
    envelope: EncryptedEnvelope,
    key_lookup: Callable[[int], KeyMaterial],
    new_key: KeyMaterial,
    codec: AeadCodec
) -> EncryptedEnvelope:
    """Decrypt under the envelope's stamped key and encrypt under the new key.

    Args:
        envelope: Envelope to migrate
        key_lookup: Resolves the key for the stamped version
        new_key: Key to re-encrypt under
        codec: AEAD codec

    Returns:
        Envelope stamped with the new key's version

    Raises:
        UnknownKeyVersionError: If the stamped key is unknown
        AuthenticationError: If the stored envelope fails verification
    """
    plaintext = codec.decrypt(envelope, key_lookup)
    return codec.encrypt(plaintext, new_key)
