import os
import subprocess
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from secretree.pgp import (
    GPG_EXEC_ENV,
    GnuPGHome,
    MasterKey,
    PgpError,
    gnupg_home,
    gpg_binary,
    master_keys_from_fingerprint_string,
    new_gnupg_home,
    new_master_key_from_fingerprint,
    shorten_fingerprint,
)

FINGERPRINT = "FBC7B9E2A4F9289AC0C1D4843D16CEE4A27381B4"


def _completed(returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def gpg_env(monkeypatch):
    monkeypatch.delenv(GPG_EXEC_ENV, raising=False)


@pytest.fixture
def home():
    directory = new_gnupg_home()
    yield directory
    if os.path.isdir(directory):
        directory.cleanup()


def test_shorten_fingerprint_keeps_last_sixteen():
    assert shorten_fingerprint(FINGERPRINT) == FINGERPRINT[-16:]


def test_shorten_fingerprint_keeps_exclamation_mark():
    assert shorten_fingerprint(FINGERPRINT + "!") == FINGERPRINT[-16:] + "!"


def test_shorten_fingerprint_short_input_unchanged():
    assert shorten_fingerprint("ABCDEF") == "ABCDEF"


def test_new_master_key_strips_spaces():
    key = new_master_key_from_fingerprint("FBC7 B9E2 A4F9")
    assert key.fingerprint == "FBC7B9E2A4F9"
    assert abs(datetime.now(timezone.utc) - key.creation_date) < timedelta(minutes=1)


def test_master_keys_from_empty_string():
    assert master_keys_from_fingerprint_string("") == []


def test_master_keys_from_list():
    keys = master_keys_from_fingerprint_string("AAAA,BB BB")
    assert [key.fingerprint for key in keys] == ["AAAA", "BBBB"]


def test_gpg_binary_default(gpg_env):
    assert gpg_binary() == "gpg"


def test_gpg_binary_from_environment(monkeypatch):
    monkeypatch.setenv(GPG_EXEC_ENV, "/opt/custom-gpg")
    assert gpg_binary() == "/opt/custom-gpg"


def test_gnupg_home_custom_path():
    assert gnupg_home("/custom/home") == "/custom/home"


def test_gnupg_home_from_environment(monkeypatch):
    monkeypatch.setenv("GNUPGHOME", "/env/gnupg")
    assert gnupg_home("") == "/env/gnupg"


def test_gnupg_home_fallback(monkeypatch):
    monkeypatch.delenv("GNUPGHOME", raising=False)
    assert os.path.basename(gnupg_home("")) == ".gnupg"


def test_needs_rotation():
    old = MasterKey(FINGERPRINT, creation_date=datetime.now(timezone.utc) - timedelta(days=181))
    fresh = MasterKey(FINGERPRINT)
    assert old.needs_rotation() is True
    assert fresh.needs_rotation() is False


def test_to_map():
    created = datetime(2020, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    key = MasterKey(FINGERPRINT, encrypted_key="enc-data", creation_date=created)
    assert key.to_map() == {
        "fp": FINGERPRINT,
        "created_at": "2020-01-02T03:04:05Z",
        "enc": "enc-data",
    }


def test_type_identifier_and_str():
    key = MasterKey(FINGERPRINT)
    assert key.type_to_identifier() == "pgp"
    assert str(key) == FINGERPRINT


def test_encrypted_data_key_round_trip():
    key = MasterKey(FINGERPRINT)
    key.set_encrypted_data_key(b"-----BEGIN PGP MESSAGE-----")
    assert key.encrypted_key == "-----BEGIN PGP MESSAGE-----"
    assert key.encrypted_data_key() == b"-----BEGIN PGP MESSAGE-----"


def test_encrypt_runs_gpg_with_recipient(gpg_env):
    key = MasterKey(FINGERPRINT)
    with mock.patch("subprocess.run", return_value=_completed(stdout=b"  ARMORED\n")) as run:
        key.encrypt(b"data key")
    assert key.encrypted_key == "ARMORED"
    command = run.call_args.args[0]
    assert command == [
        "gpg",
        "--no-default-recipient",
        "--yes",
        "--encrypt",
        "-a",
        "-r",
        FINGERPRINT,
        "--trusted-key",
        FINGERPRINT[-16:],
        "--no-encrypt-to",
    ]
    assert run.call_args.kwargs["input"] == b"data key"


def test_encrypt_failure_reports_stderr(gpg_env):
    key = MasterKey(FINGERPRINT)
    with mock.patch("subprocess.run", return_value=_completed(2, stderr=b"no public key\n")):
        with pytest.raises(PgpError, match="no public key"):
            key.encrypt(b"data key")
    assert key.encrypted_key == ""


def test_encrypt_if_needed_skips_when_encrypted(gpg_env):
    key = MasterKey(FINGERPRINT, encrypted_key="already")
    with mock.patch("subprocess.run") as run:
        key.encrypt_if_needed(b"data key")
    assert run.call_count == 0
    assert key.encrypted_key == "already"


def test_encrypt_if_needed_encrypts_when_empty(gpg_env):
    key = MasterKey(FINGERPRINT)
    with mock.patch("subprocess.run", return_value=_completed(stdout=b"CIPHER")) as run:
        key.encrypt_if_needed(b"data key")
    assert run.call_count == 1
    assert key.encrypted_key == "CIPHER"


def test_decrypt_returns_stdout(gpg_env):
    key = MasterKey(FINGERPRINT, encrypted_key="CIPHER")
    with mock.patch("subprocess.run", return_value=_completed(stdout=b"plain key")) as run:
        assert key.decrypt() == b"plain key"
    assert run.call_args.args[0] == ["gpg", "-d"]
    assert run.call_args.kwargs["input"] == b"CIPHER"


def test_decrypt_failure(gpg_env):
    key = MasterKey(FINGERPRINT, encrypted_key="CIPHER")
    with mock.patch("subprocess.run", return_value=_completed(2, stderr=b"decryption failed")):
        with pytest.raises(PgpError, match="decryption failed"):
            key.decrypt()


def test_decrypt_with_missing_binary(monkeypatch, tmp_path):
    monkeypatch.setenv(GPG_EXEC_ENV, str(tmp_path / "no-such-gpg"))
    key = MasterKey(FINGERPRINT, encrypted_key="CIPHER")
    with pytest.raises(PgpError, match="could not decrypt data key"):
        key.decrypt()


def test_home_applied_to_master_key(gpg_env, home):
    key = MasterKey(FINGERPRINT, encrypted_key="CIPHER")
    home.apply_to_master_key(key)
    with mock.patch("subprocess.run", return_value=_completed(stdout=b"x")) as run:
        assert key.decrypt() == b"x"
    assert run.call_args.args[0] == ["gpg", "--homedir", str(home), "-d"]


def test_invalid_home_not_applied(gpg_env):
    key = MasterKey(FINGERPRINT, encrypted_key="CIPHER")
    GnuPGHome("relative/path").apply_to_master_key(key)
    with mock.patch("subprocess.run", return_value=_completed(stdout=b"plain")) as run:
        assert key.decrypt() == b"plain"
    assert run.call_args.args[0] == ["gpg", "-d"]


def test_new_home_validates_and_cleans_up():
    directory = new_gnupg_home()
    assert os.path.isabs(directory)
    assert os.path.isdir(directory)
    directory.validate()
    directory.cleanup()
    assert not os.path.exists(directory)
    with pytest.raises(PgpError, match="does not exist"):
        directory.validate()


def test_validate_empty():
    with pytest.raises(PgpError, match="empty GNUPGHOME path"):
        GnuPGHome("").validate()


def test_validate_relative():
    with pytest.raises(PgpError, match="absolute path"):
        GnuPGHome("relative").validate()


def test_validate_missing(tmp_path):
    with pytest.raises(PgpError, match="does not exist"):
        GnuPGHome(str(tmp_path / "missing")).validate()


def test_validate_not_directory(tmp_path):
    path = tmp_path / "file"
    path.write_text("x")
    with pytest.raises(PgpError, match="not a directory"):
        GnuPGHome(str(path)).validate()


def test_validate_bad_permissions(tmp_path):
    path = tmp_path / "home"
    path.mkdir()
    os.chmod(path, 0o755)
    with pytest.raises(PgpError, match="invalid permissions"):
        GnuPGHome(str(path)).validate()


def test_cleanup_refuses_invalid_home(tmp_path):
    path = tmp_path / "home"
    path.mkdir()
    os.chmod(path, 0o755)
    with pytest.raises(PgpError):
        GnuPGHome(str(path)).cleanup()
    assert path.is_dir()


def test_import_key_runs_batch_import(gpg_env, home):
    with mock.patch("subprocess.run", return_value=_completed()) as run:
        home.import_key(b"ARMORED KEY")
    assert run.call_args.args[0] == ["gpg", "--homedir", str(home), "--batch", "--import"]
    assert run.call_args.kwargs["input"] == b"ARMORED KEY"


def test_import_key_failure_message(gpg_env, home):
    with mock.patch("subprocess.run", return_value=_completed(2, stderr=b"bad data\n")):
        with pytest.raises(PgpError) as excinfo:
            home.import_key(b"ARMORED KEY")
    assert str(excinfo.value) == (
        "failed to import armored key data into GnuPG keyring (exit status 2): bad data"
    )


def test_import_key_invalid_home():
    with pytest.raises(PgpError, match="cannot import armored key data"):
        GnuPGHome("").import_key(b"ARMORED KEY")


def test_import_file_reads_file(gpg_env, home, tmp_path):
    path = tmp_path / "key.asc"
    path.write_bytes(b"FILE KEY")
    with mock.patch("subprocess.run", return_value=_completed(2, stderr=b"bad file key\n")) as run:
        with pytest.raises(PgpError, match="bad file key"):
            home.import_file(path)
    assert run.call_args.kwargs["input"] == b"FILE KEY"


def test_import_file_missing(home, tmp_path):
    with pytest.raises(PgpError, match="cannot read armored key data from file"):
        home.import_file(tmp_path / "missing.asc")