"""Library-wide constants.

These constants centralize tunable values used across modules to keep
behavior consistent and avoid duplication.
"""



class Constants:

    # AEAD parameters (AES-256-GCM)
    _KEY_SIZE_BYTES: int = 32
    _NONCE_SIZE_BYTES: int = 12
    _TAG_SIZE_BYTES: int = 16

    # Envelope layout: format byte + 4-byte big-endian key version
    _ENVELOPE_FORMAT: int = 1
    _ENVELOPE_HEADER_SIZE: int = 5
    _MAX_KEY_VERSION: int = 0xFFFFFFFF

    # Key wrapping policy
    _MIN_ITERATIONS: int = 10_000
    _DEFAULT_ITERATIONS: int = 600_000
    _DEFAULT_SALT_SIZE: int = 32
    _MIN_PASSWORD_LENGTH: int = 12

    # Key rotation policy
    _MAX_ROTATION_HISTORY: int = 25  # Maximum number of rotation history entries to keep
    _ROTATION_PROGRESS_INTERVAL: int = 500  # Log sweep progress every N records

    # Key size in bytes
    @classmethod
    def KEY_SIZE_BYTES(cls) -> int:
        return cls._KEY_SIZE_BYTES

    @classmethod
    def NONCE_SIZE_BYTES(cls) -> int:
        return cls._NONCE_SIZE_BYTES

    @classmethod
    def TAG_SIZE_BYTES(cls) -> int:
        return cls._TAG_SIZE_BYTES

    @classmethod
    def ENVELOPE_FORMAT(cls) -> int:
        return cls._ENVELOPE_FORMAT

    @classmethod
    def ENVELOPE_HEADER_SIZE(cls) -> int:
        return cls._ENVELOPE_HEADER_SIZE

    # Smallest valid envelope: header, nonce and tag around an empty ciphertext
    @classmethod
    def MIN_ENVELOPE_SIZE(cls) -> int:
        return cls._ENVELOPE_HEADER_SIZE + cls._NONCE_SIZE_BYTES + cls._TAG_SIZE_BYTES

    @classmethod
    def MAX_KEY_VERSION(cls) -> int:
        return cls._MAX_KEY_VERSION

    @classmethod
    def MIN_ITERATIONS(cls) -> int:
        return cls._MIN_ITERATIONS

    @classmethod
    def DEFAULT_ITERATIONS(cls) -> int:
        return cls._DEFAULT_ITERATIONS

    @classmethod
    def DEFAULT_SALT_SIZE(cls) -> int:
        return cls._DEFAULT_SALT_SIZE

    @classmethod
    def MIN_PASSWORD_LENGTH(cls) -> int:
        return cls._MIN_PASSWORD_LENGTH

    # Key rotation policy
    @classmethod
    def MAX_ROTATION_HISTORY(cls) -> int:
        return cls._MAX_ROTATION_HISTORY

    @classmethod
    def ROTATION_PROGRESS_INTERVAL(cls) -> int:
        return cls._ROTATION_PROGRESS_INTERVAL
