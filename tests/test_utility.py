"""Shared test utilities for the splurge-field-cipher project."""

import json
import os
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from splurge_field_cipher.codec import AeadCodec
from splurge_field_cipher.constants import Constants
from splurge_field_cipher.crypto_utils import CryptoUtils
from splurge_field_cipher.models import KeyMaterial, KeyStatus

PROJECT_ROOT = Path(__file__).parent.parent


class TestDataHelper:
    """Helper class for creating keys, envelopes and records."""

    SAMPLE_CARD_NUMBER = "1234-5678-9012"

    @classmethod
    def create_test_master_password(cls) -> str:
        """Create a master password long enough to wrap key secrets."""
        return "TestMasterPassword123!@#"

    @classmethod
    def fast_iterations(cls) -> int:
        """Cheapest PBKDF2 iteration count accepted by the key store."""
        return Constants.MIN_ITERATIONS()

    @classmethod
    def create_key(cls, version: int = 1, status: KeyStatus = KeyStatus.ACTIVE) -> KeyMaterial:
        """Create key material with a fresh random secret."""
        return KeyMaterial(
            version=version,
            secret=CryptoUtils.generate_random_key(),
            status=status,
        )

    @classmethod
    def lookup_for(cls, *keys: KeyMaterial) -> Callable[[int], Optional[KeyMaterial]]:
        """Key lookup over a fixed set of keys."""
        by_version = {key.version: key for key in keys}
        return by_version.get

    @classmethod
    def encrypt_text(cls, text: str, key: KeyMaterial) -> str:
        """Encrypt a string directly with the codec."""
        return AeadCodec().encrypt_to_string(text.encode("utf-8"), key)

    @classmethod
    def create_customer_values(cls, count: int) -> Dict[str, str]:
        """Distinct plaintext values keyed by record id."""
        return {f"cust-{i:03d}": f"4111-0000-{i:04d}" for i in range(count)}


class TestUtilities:
    """Test utilities shared by the integration and functional suites."""

    @staticmethod
    def create_temp_data_dir() -> str:
        """Create a temporary directory for test data."""
        return tempfile.mkdtemp(prefix="test_field_cipher_")

    @staticmethod
    def cleanup_temp_dir(temp_dir: str) -> None:
        """Clean up temporary directory."""
        if os.path.exists(temp_dir):
            shutil.rmtree(temp_dir, ignore_errors=True)

    @staticmethod
    def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
        """Poll a predicate until it holds or the timeout expires."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.005)
        return predicate()

    @staticmethod
    def run_in_thread(target: Callable[[], Any]) -> Dict[str, Any]:
        """Start target on a daemon thread, capturing its result or exception.

        The returned dict holds the thread under "thread" and, once it
        finishes, either "result" or "error".
        """
        outcome: Dict[str, Any] = {}

        def _runner() -> None:
            try:
                outcome["result"] = target()
            except BaseException as e:
                outcome["error"] = e

        thread = threading.Thread(target=_runner, daemon=True)
        outcome["thread"] = thread
        thread.start()
        return outcome

    @staticmethod
    def _cli_env() -> Dict[str, str]:
        env = dict(os.environ)
        env.pop("SFC_DATA_DIR", None)
        env["PYTHONPATH"] = str(PROJECT_ROOT) + os.pathsep + env.get("PYTHONPATH", "")
        return env

    @staticmethod
    def _parse_json_output(output: str) -> Dict[str, Any]:
        # Unconfigured logging may put warning lines ahead of the JSON object
        start = output.find("{")
        if start < 0:
            return {"success": False, "error": "No JSON in output", "output": output.strip()}
        try:
            return json.loads(output[start:])
        except json.JSONDecodeError:
            return {"success": False, "error": "Invalid JSON in output", "output": output.strip()}

    @staticmethod
    def run_cli_command(args: List[str], env: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Run a CLI command in a subprocess and return the JSON result."""
        cli_env = TestUtilities._cli_env()
        if env:
            cli_env.update(env)

        result = subprocess.run(
            [sys.executable, "-m", "splurge_field_cipher.cli"] + args,
            capture_output=True,
            text=True,
            check=False,
            cwd=PROJECT_ROOT,
            env=cli_env,
        )
        if result.returncode == 0:
            return TestUtilities._parse_json_output(result.stdout)
        return TestUtilities._parse_json_output(result.stderr)
