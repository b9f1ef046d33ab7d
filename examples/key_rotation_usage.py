#!/usr/bin/env python3
"""Example of rotating the field encryption key while writers keep running."""

import tempfile
import threading

from splurge_field_cipher import (
    FieldCipher,
    FieldCipherConfig,
    FieldRegistry,
    InMemoryFieldStore,
    MaintenanceInProgressError,
)


def main():
    """Demonstrate live key rotation, retired keys and purging."""

    with tempfile.TemporaryDirectory() as temp_dir:
        registry = FieldRegistry()
        registry.register("billing.Customer", "card_number")
        store = InMemoryFieldStore()
        cipher = FieldCipher.from_data_dir(
            temp_dir,
            config=FieldCipherConfig(entity_scan_scope="billing", maintenance_block_timeout=5.0),
            field_store=store,
            registry=registry,
        )

        for i in range(100):
            record_id = f"cust-{i:03d}"
            store.add_record(record_id, "billing.Customer", {"name": record_id})
            cipher.write_field(record_id, "card_number", f"4111-0000-{i:04d}")

        old_envelope = store.load_raw_field("cust-000", "card_number")
        print(f"Before rotation: active key version {cipher.key_store.get_active().version}")

        # A writer that keeps updating one record during the sweep
        stop = threading.Event()
        rejected = []

        def writer():
            count = 0
            while not stop.is_set():
                count += 1
                try:
                    cipher.write_field("cust-042", "card_number", f"updated-{count}")
                except MaintenanceInProgressError:
                    rejected.append(count)

        thread = threading.Thread(target=writer)
        thread.start()
        report = cipher.trigger_rotation()
        stop.set()
        thread.join()

        print("Rotation report:")
        for name in ("old_version", "new_version", "migrated", "skipped", "failed", "committed"):
            print(f"  {name}: {report.to_dict()[name]}")
        print(f"Writes rejected during rotation: {len(rejected)}")
        print(f"cust-042 now reads: {cipher.read_field('cust-042', 'card_number')}")
        print()

        # Envelopes written before the rotation stay readable until the key is purged
        print(f"Old envelope still decrypts: {cipher.decrypt_text(old_envelope)}")
        print(f"Key status: {cipher.key_status()}")

        purged = cipher.purge_retired_keys()
        print(f"Purged retired key versions: {purged}")

        print()
        print("Rotation history:")
        for entry in cipher.rotation_history():
            print(f"  {entry.created_at.isoformat()} v{entry.old_version} -> v{entry.new_version} "
                  f"migrated={entry.migrated} committed={entry.committed}")


if __name__ == "__main__":
    main()
