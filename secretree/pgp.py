"""PGP master keys that encrypt and decrypt a document's data key.

Encryption and decryption go through the GnuPG binary. The binary can be
replaced with the SOPS_GPG_EXEC environment variable, and every call can be
confined to a dedicated GnuPG home directory.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import subprocess
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

__all__ = [
    "KEY_TYPE_IDENTIFIER",
    "GPG_EXEC_ENV",
    "PGP_TTL",
    "PgpError",
    "GnuPGHome",
    "MasterKey",
    "new_gnupg_home",
    "new_master_key_from_fingerprint",
    "master_keys_from_fingerprint_string",
    "shorten_fingerprint",
    "gpg_binary",
    "gnupg_home",
]

_log = logging.getLogger(__name__)

# Identifies a PGP master key.
KEY_TYPE_IDENTIFIER = "pgp"
# Environment variable that overrides the GnuPG binary.
GPG_EXEC_ENV = "SOPS_GPG_EXEC"
# Age after which a master key should be rotated.
PGP_TTL = timedelta(hours=24 * 30 * 6)


class PgpError(Exception):
    """A PGP operation or GnuPG home directory check failed."""


@dataclass
class _GpgResult:
    stdout: bytes
    stderr: bytes
    error: str

    @property
    def failed(self) -> bool:
        return bool(self.error)


def _gpg_exec(home_dir: str, args: Sequence[str], stdin: bytes) -> _GpgResult:
    """Run the GnuPG binary with args, confined to home_dir when given."""
    command = [gpg_binary()]
    if home_dir:
        command += ["--homedir", home_dir]
    command += list(args)
    try:
        completed = subprocess.run(command, input=stdin, capture_output=True, check=False)
    except OSError as exc:
        return _GpgResult(b"", b"", str(exc) or type(exc).__name__)
    stdout = completed.stdout or b""
    stderr = completed.stderr or b""
    error = f"exit status {completed.returncode}" if completed.returncode != 0 else ""
    return _GpgResult(stdout, stderr, error)


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace").strip()


def gpg_binary() -> str:
    """Return the GnuPG binary to run, honouring SOPS_GPG_EXEC."""
    return os.environ.get(GPG_EXEC_ENV) or "gpg"


def gnupg_home(custom_path: str = "") -> str:
    """Return the GnuPG home: custom_path, $GNUPGHOME, or ~/.gnupg."""
    if custom_path:
        return custom_path
    directory = os.environ.get("GNUPGHOME", "")
    if directory:
        return directory
    home = os.path.expanduser("~")
    if home == "~":
        home = os.environ.get("HOME", "")
    return os.path.join(home, ".gnupg")


def shorten_fingerprint(fingerprint: str) -> str:
    """Return the 16-digit short ID of a fingerprint, keeping a trailing '!'."""
    offset = len(fingerprint) - 16
    if fingerprint.endswith("!"):
        offset -= 1
    if offset > 0:
        return fingerprint[offset:]
    return fingerprint


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass
class MasterKey:
    """A PGP key, by fingerprint, holding the data key it encrypted."""

    fingerprint: str
    encrypted_key: str = ""
    creation_date: datetime = field(default_factory=_utc_now)
    _gnupg_home_dir: str = field(default="", init=False, repr=False, compare=False)

    def __str__(self) -> str:
        return self.fingerprint

    def encrypt(self, data_key: bytes) -> None:
        """Encrypt data_key for this key's fingerprint and keep the result."""
        args = [
            "--no-default-recipient",
            "--yes",
            "--encrypt",
            "-a",
            "-r",
            self.fingerprint,
            "--trusted-key",
            shorten_fingerprint(self.fingerprint),
            "--no-encrypt-to",
        ]
        result = _gpg_exec(self._gnupg_home_dir, args, bytes(data_key))
        if result.failed:
            _log.info("Encryption failed for fingerprint %s", self.fingerprint)
            raise PgpError(
                "could not encrypt data key with PGP key: GnuPG binary error: "
                f"failed to encrypt sops data key with pgp: {_decode(result.stderr)}"
            )
        self.set_encrypted_data_key(result.stdout.strip())
        _log.info("Encryption succeeded for fingerprint %s", self.fingerprint)

    def encrypt_if_needed(self, data_key: bytes) -> None:
        """Encrypt data_key unless an encrypted key is already held."""
        if not self.encrypted_key:
            self.encrypt(data_key)

    def encrypted_data_key(self) -> bytes:
        """Return the encrypted data key this key holds."""
        return self.encrypted_key.encode("utf-8")

    def set_encrypted_data_key(self, enc: bytes) -> None:
        """Store the encrypted data key."""
        self.encrypted_key = bytes(enc).decode("utf-8", errors="surrogateescape")

    def decrypt(self) -> bytes:
        """Return the data key decrypted from the held encrypted key."""
        result = _gpg_exec(self._gnupg_home_dir, ["-d"], self.encrypted_data_key())
        if result.failed:
            _log.info("Decryption failed for fingerprint %s", self.fingerprint)
            raise PgpError(
                "could not decrypt data key with PGP key: GnuPG binary error: "
                f"failed to decrypt sops data key with pgp: {_decode(result.stderr)}"
            )
        _log.info("Decryption succeeded for fingerprint %s", self.fingerprint)
        return result.stdout

    def needs_rotation(self) -> bool:
        """Tell whether the key is older than PGP_TTL."""
        return _utc_now() - _as_utc(self.creation_date) > PGP_TTL

    def to_map(self) -> dict[str, Any]:
        """Return the key as a dict for serialization."""
        return {
            "fp": self.fingerprint,
            "created_at": _as_utc(self.creation_date).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "enc": self.encrypted_key,
        }

    def type_to_identifier(self) -> str:
        """Return the key type identifier, "pgp"."""
        return KEY_TYPE_IDENTIFIER


def new_master_key_from_fingerprint(fingerprint: str) -> MasterKey:
    """Create a master key for a fingerprint, dropping any spaces in it."""
    return MasterKey(fingerprint=fingerprint.replace(" ", ""))


def master_keys_from_fingerprint_string(fingerprint: str) -> list[MasterKey]:
    """Create master keys from a comma separated list of fingerprints."""
    if not fingerprint:
        return []
    return [new_master_key_from_fingerprint(part) for part in fingerprint.split(",")]


class GnuPGHome(str):
    """The absolute path of a GnuPG home directory."""

    def validate(self) -> None:
        """Raise PgpError unless this is an absolute path to a 0700 directory."""
        if not self:
            raise PgpError("empty GNUPGHOME path")
        if not os.path.isabs(self):
            raise PgpError("GNUPGHOME must be an absolute path")
        try:
            info = os.lstat(self)
        except FileNotFoundError:
            raise PgpError("GNUPGHOME does not exist") from None
        except OSError as exc:
            raise PgpError(f"cannot stat GNUPGHOME: {exc}") from exc
        if not stat.S_ISDIR(info.st_mode):
            raise PgpError("GNUPGHOME is not a directory")
        permissions = stat.S_IMODE(info.st_mode)
        if permissions != 0o700:
            raise PgpError(
                f"GNUPGHOME has invalid permissions: got {permissions:#o} wanted {0o700:#o}"
            )

    def import_key(self, armored_key: bytes) -> None:
        """Import armored key data into this keyring."""
        try:
            self.validate()
        except PgpError as exc:
            raise PgpError(f"cannot import armored key data into GnuPG keyring: {exc}") from exc
        result = _gpg_exec(str(self), ["--batch", "--import"], bytes(armored_key))
        if not result.failed:
            return
        message = "failed to import armored key data into GnuPG keyring"
        stderr = _decode(result.stderr)
        if stderr:
            message += f" ({result.error}): {stderr}"
        else:
            message += f": {result.error}"
        raise PgpError(message)

    def import_file(self, path: str | os.PathLike[str]) -> None:
        """Import an armored key file into this keyring."""
        try:
            with open(path, "rb") as handle:
                data = handle.read()
        except OSError as exc:
            raise PgpError(f"cannot read armored key data from file: {exc}") from exc
        self.import_key(data)

    def cleanup(self) -> None:
        """Delete the directory, once it passes validate."""
        self.validate()
        shutil.rmtree(self)

    def apply_to_master_key(self, key: MasterKey) -> None:
        """Confine key's GnuPG calls to this home, if it is valid."""
        try:
            self.validate()
        except PgpError:
            return
        key._gnupg_home_dir = str(self)


def new_gnupg_home() -> GnuPGHome:
    """Create a GnuPG home in a new temporary directory; the caller removes it."""
    try:
        directory = tempfile.mkdtemp(prefix="sops-gnupghome-")
    except OSError as exc:
        raise PgpError(f"failed to create new GnuPG home: {exc}") from exc
    os.chmod(directory, 0o700)
    return GnuPGHome(os.path.abspath(directory))