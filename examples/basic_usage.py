#!/usr/bin/env python3
"""Example usage of the Field Cipher with an in-memory field store."""

import tempfile

from splurge_field_cipher import (
    FieldCipher,
    FieldCipherConfig,
    FieldRegistry,
    InMemoryFieldStore,
)


def main():
    """Demonstrate field-level encryption at the persistence boundary."""

    # Create a temporary directory for the key store
    with tempfile.TemporaryDirectory() as temp_dir:
        print(f"Using temporary directory: {temp_dir}")

        registry = FieldRegistry()
        registry.register("billing.Customer", "card_number", "iban")

        store = InMemoryFieldStore()
        cipher = FieldCipher.from_data_dir(
            temp_dir,
            config=FieldCipherConfig(entity_scan_scope="billing"),
            field_store=store,
            registry=registry,
        )

        print(f"Active key version: {cipher.key_store.get_active().version}")
        print()

        # Registered fields are encrypted, everything else is stored as is
        customer = {"name": "Ada Lovelace", "card_number": "1234-5678-9012", "iban": "GB00 0000"}
        store.add_record("cust-1", "billing.Customer", cipher.encode_record("billing.Customer", customer))

        raw = store.raw_record("cust-1")
        print("Stored record:")
        for name, value in raw.items():
            print(f"  {name}: {value}")
        print()

        # Single-field writes go through the maintenance gate
        cipher.write_field("cust-1", "card_number", "9999-8888-7777")
        print(f"Updated card number: {cipher.read_field('cust-1', 'card_number')}")

        decoded = cipher.decode_record("billing.Customer", store.raw_record("cust-1"))
        print(f"Decoded record: {decoded}")

        envelope = store.load_raw_field("cust-1", "iban")
        print(f"IBAN envelope key version: {cipher.field_service.key_version_of(envelope)}")


if __name__ == "__main__":
    main()
