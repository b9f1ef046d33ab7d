#!/usr/bin/env python3
"""Command-line interface for the Splurge Field Cipher system."""

import argparse
import json
import logging
import os
import sys
from typing import Any, Optional

from splurge_field_cipher.config import FailureTolerance, FieldCipherConfig
from splurge_field_cipher.constants import Constants
from splurge_field_cipher.exceptions import (
    FieldCipherError,
    RotationAlreadyInProgressError,
    ValidationError,
)
from splurge_field_cipher.field_cipher import FieldCipher
from splurge_field_cipher.persistence import JsonFileFieldStore
from splurge_field_cipher.registry import ALL_SCOPES


class FieldCipherCLI:
    """Command-line interface for the Field Cipher system."""

    def __init__(self) -> None:
        """Initialize the CLI."""
        self._parser = self._create_parser()
        self._pretty = False

    def _default_data_dir(self) -> str:
        """Compute a platform-appropriate default data directory."""
        # Environment override for tests/CI or advanced users
        env_dir = os.getenv("SFC_DATA_DIR")
        if env_dir:
            return env_dir

        # Windows: use %APPDATA%\splurge-field-cipher
        appdata = os.getenv("APPDATA")
        if appdata:
            return os.path.join(appdata, "splurge-field-cipher")

        # POSIX: ~/.config/splurge-field-cipher
        home = os.path.expanduser("~")
        if home:
            return os.path.join(home, ".config", "splurge-field-cipher")

        return os.path.join(os.getcwd(), ".sfc")

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create the argument parser.

        Returns:
            Configured argument parser
        """
        parser = argparse.ArgumentParser(
            prog="splurge-field-cipher",
            description="Splurge Field Cipher - field-level encryption with key rotation",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  # Create the key store (version 1)
  splurge-field-cipher -d /path/to/keys init

  # Encrypt and decrypt a value
  splurge-field-cipher -d /path/to/keys encrypt -v "1234-5678-9012"
  splurge-field-cipher -d /path/to/keys decrypt -e "<envelope>"

  # Wrap stored keys with a password from the environment
  splurge-field-cipher -ep SFC_MASTER_PASSWORD -d /path/to/keys status

  # Re-encrypt every record of a records file under a new key
  splurge-field-cipher -d /path/to/keys rotate -r records.json -s billing

  # Purge retired keys, keeping the newest one
  splurge-field-cipher -d /path/to/keys purge -k 1
            """,
        )

        # Global arguments
        parser.add_argument(
            "-d",
            "--data-dir",
            default=self._default_data_dir(),
            help="Directory holding the key store (default: platform config dir)",
        )
        parser.add_argument(
            "-p",
            "--password",
            help="Master password wrapping stored key secrets (optional)",
        )
        parser.add_argument(
            "-ep",
            "--env-password",
            help="Environment variable containing the master password",
        )
        parser.add_argument(
            "-i",
            "--iterations",
            type=int,
            help=f"PBKDF2 iterations for key wrapping (minimum: {Constants.MIN_ITERATIONS():,}, default: {Constants.DEFAULT_ITERATIONS():,})",
        )
        parser.add_argument(
            "--pretty",
            action="store_true",
            help="Pretty-print JSON outputs",
        )
        parser.add_argument(
            "--verbose",
            action="store_true",
            help="Log progress to stderr",
        )

        subparsers = parser.add_subparsers(
            dest="command",
            help="Available commands",
        )

        subparsers.add_parser(
            "data-dir",
            help="Print the data directory path that will be used",
        )
        subparsers.add_parser(
            "init",
            help="Create the key store if it does not exist",
        )
        subparsers.add_parser(
            "status",
            help="List key versions and their status",
        )

        encrypt_parser = subparsers.add_parser(
            "encrypt",
            help="Encrypt a text value",
        )
        encrypt_parser.add_argument(
            "-v",
            "--value",
            required=True,
            help="Text to encrypt",
        )

        decrypt_parser = subparsers.add_parser(
            "decrypt",
            help="Decrypt an envelope string",
        )
        decrypt_parser.add_argument(
            "-e",
            "--envelope",
            required=True,
            help="Envelope string to decrypt",
        )

        rotate_parser = subparsers.add_parser(
            "rotate",
            help="Re-encrypt a records file under a new key",
        )
        rotate_parser.add_argument(
            "-r",
            "--records",
            required=True,
            help="JSON records file (entities + records)",
        )
        rotate_parser.add_argument(
            "-s",
            "--scope",
            default=ALL_SCOPES,
            help="Record type scope to rotate (default: all)",
        )
        rotate_parser.add_argument(
            "--best-effort",
            action="store_true",
            help="Commit the new key even if some records fail",
        )

        purge_parser = subparsers.add_parser(
            "purge",
            help="Delete retired keys",
        )
        purge_parser.add_argument(
            "-k",
            "--keep",
            type=int,
            default=0,
            help="Number of most recent retired keys to keep (default: 0)",
        )

        history_parser = subparsers.add_parser(
            "history",
            help="View rotation history",
        )
        history_parser.add_argument(
            "-l",
            "--limit",
            type=int,
            help="Maximum number of history entries to show (optional)",
        )

        return parser

    def _resolve_password(self, args: argparse.Namespace) -> str | None:
        """Resolve the master password from arguments or the environment.

        Raises:
            ValidationError: If both sources are given or the variable is unset
        """
        if args.password and args.env_password:
            raise ValidationError("Cannot specify both password and environment password")

        if args.env_password:
            value = os.getenv(args.env_password)
            if value is None or value.strip() == "":
                raise ValidationError(f"Environment variable {args.env_password} not set or empty")
            return value

        return args.password

    def _get_cipher(
        self,
        args: argparse.Namespace,
        *,
        config: FieldCipherConfig | None = None,
        field_store: JsonFileFieldStore | None = None
    ) -> FieldCipher:
        """Build a FieldCipher for the data directory in args."""
        if not args.data_dir:
            raise ValidationError("Data directory (-d/--data-dir) is required")

        return FieldCipher.from_data_dir(
            args.data_dir,
            config=config,
            master_password=self._resolve_password(args),
            iterations=args.iterations,
            field_store=field_store,
            registry=field_store.registry if field_store is not None else None,
        )

    def _print_json(self, payload: dict[str, Any]) -> None:
        """Print a JSON payload to stdout."""
        print(json.dumps(payload, indent=2 if self._pretty else None))

    def _print_error(self, *, message: str, code: str = "error", extra: dict[str, Any] | None = None) -> None:
        """Print a JSON error to stderr and exit non-zero."""
        error_obj = {
            "success": False,
            "error_code": code,
            "message": message,
        }
        if extra:
            error_obj["data"] = extra
        print(json.dumps(error_obj, indent=2), file=sys.stderr)
        sys.exit(1)

    def _handle_init(self, args: argparse.Namespace) -> None:
        """Handle init command."""
        cipher = self._get_cipher(args)
        active = cipher.key_store.get_active()
        self._print_json({
            "success": True,
            "command": "init",
            "active_version": active.version,
        })

    def _handle_status(self, args: argparse.Namespace) -> None:
        """Handle status command."""
        cipher = self._get_cipher(args)
        keys = cipher.key_status()
        self._print_json({
            "success": True,
            "command": "status",
            "active_version": cipher.key_store.get_active().version,
            "keys": keys,
        })

    def _handle_encrypt(self, args: argparse.Namespace) -> None:
        """Handle encrypt command."""
        cipher = self._get_cipher(args)
        self._print_json({
            "success": True,
            "command": "encrypt",
            "envelope": cipher.encrypt_text(args.value),
        })

    def _handle_decrypt(self, args: argparse.Namespace) -> None:
        """Handle decrypt command."""
        cipher = self._get_cipher(args)
        envelope = args.envelope.strip()
        self._print_json({
            "success": True,
            "command": "decrypt",
            "key_version": cipher.field_service.key_version_of(envelope),
            "value": cipher.decrypt_text(envelope),
        })

    def _handle_rotate(self, args: argparse.Namespace) -> None:
        """Handle rotate command."""
        if not os.path.exists(args.records):
            raise ValidationError(f"Records file not found: {args.records}")

        store = JsonFileFieldStore(args.records)
        config = FieldCipherConfig(
            entity_scan_scope=args.scope,
            rotation_failure_tolerance=(
                FailureTolerance.BEST_EFFORT if args.best_effort else FailureTolerance.STRICT
            ),
        )
        cipher = self._get_cipher(args, config=config, field_store=store)

        report = cipher.trigger_rotation()
        if not report.committed:
            self._print_error(
                message="Rotation finished without committing the new key",
                code="rotation_not_committed",
                extra=report.to_dict(),
            )

        self._print_json({
            "success": True,
            "command": "rotate",
            "report": report.to_dict(),
        })

    def _handle_purge(self, args: argparse.Namespace) -> None:
        """Handle purge command."""
        cipher = self._get_cipher(args)
        purged = cipher.purge_retired_keys(keep_latest=args.keep)
        self._print_json({
            "success": True,
            "command": "purge",
            "purged_versions": purged,
            "message": f"Purged {len(purged)} retired key(s)",
        })

    def _handle_history(self, args: argparse.Namespace) -> None:
        """Handle history command."""
        cipher = self._get_cipher(args)
        history = cipher.rotation_history(limit=args.limit)
        self._print_json({
            "success": True,
            "command": "history",
            "count": len(history),
            "history": [entry.to_dict() for entry in history],
        })

    def run(self, args: Optional[list[str]] = None) -> None:
        """Run the CLI with given arguments."""
        try:
            parsed_args = self._parser.parse_args(args)
            self._pretty = bool(getattr(parsed_args, "pretty", False))

            if parsed_args.verbose:
                logging.basicConfig(
                    level=logging.INFO,
                    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
                    stream=sys.stderr,
                )

            if not parsed_args.command:
                self._print_error(message="No command specified", code="missing_command")

            handlers = {
                "init": self._handle_init,
                "status": self._handle_status,
                "encrypt": self._handle_encrypt,
                "decrypt": self._handle_decrypt,
                "rotate": self._handle_rotate,
                "purge": self._handle_purge,
                "history": self._handle_history,
            }

            if parsed_args.command == "data-dir":
                self._print_json({
                    "success": True,
                    "command": "data-dir",
                    "data_dir": parsed_args.data_dir,
                })
            elif parsed_args.command in handlers:
                handlers[parsed_args.command](parsed_args)
            else:
                self._print_error(message=f"Unknown command: {parsed_args.command}", code="unknown_command")

        except ValidationError as e:
            self._print_error(message=str(e), code="validation_error")
        except RotationAlreadyInProgressError as e:
            self._print_error(message=str(e), code="rotation_in_progress")
        except FieldCipherError as e:
            self._print_error(message=str(e), code="cipher_error", extra={"error_type": type(e).__name__})
        except KeyboardInterrupt:
            self._print_error(message="Operation cancelled by user", code="cancelled")
        except Exception as e:
            self._print_error(message=str(e), code="unexpected_error")


def main() -> None:
    """Main entry point for the CLI."""
    cli = FieldCipherCLI()
    cli.run()


if __name__ == "__main__":
    main()
