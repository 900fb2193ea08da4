"""Encrypted documents: a tree of branches, its metadata and its data key.

Values are encrypted one by one with a cipher under a single data key. The
data key is encrypted with every master key of every key group; with more
than one group it is first split with Shamir's Secret Sharing so that a
quorum of groups is needed to recover it. A SHA-512 MAC over the values, in
order, protects the document's integrity.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Protocol, Sequence, runtime_checkable

from secretree import shamir
from secretree.tree import Comment, TreeBranch, to_bytes

__all__ = [
    "DEFAULT_UNENCRYPTED_SUFFIX",
    "DEFAULT_DECRYPTION_ORDER",
    "MAC_ONLY_ENCRYPTED_INITIALIZATION",
    "Cipher",
    "MasterKey",
    "Metadata",
    "Tree",
    "SopsError",
    "DataKeyError",
    "sort_key_group_indices",
]

_log = logging.getLogger(__name__)

# A key ending with this suffix keeps its value in cleartext by default.
DEFAULT_UNENCRYPTED_SUFFIX = "_unencrypted"

DEFAULT_DECRYPTION_ORDER = ["age", "pgp"]

# SHA-256 of b"sops". Seeds the MAC when only encrypted values are covered,
# so such a MAC never equals one computed over every value.
MAC_ONLY_ENCRYPTED_INITIALIZATION = bytes((
    0x8a, 0x3f, 0xd2, 0xad, 0x54, 0xce, 0x66, 0x52,
    0x7b, 0x10, 0x34, 0xf3, 0xd1, 0x47, 0xbe, 0x0b,
    0x0b, 0x97, 0x5b, 0x3b, 0xf4, 0x4f, 0x72, 0xc6,
    0xfd, 0xad, 0xec, 0x81, 0x76, 0xf2, 0x7d, 0x69,
))

DATA_KEY_SIZE = 32


class SopsError(Exception):
    """An error while encrypting, decrypting or handling the data key.

    `errors` holds the individual failures when several were collected.
    """

    def __init__(self, message: str, errors: Sequence[BaseException] = ()) -> None:
        super().__init__(message)
        self.errors = list(errors)


class DataKeyError(SopsError):
    """Too few key groups could be decrypted to recover the data key."""

    def __init__(
        self,
        required_successful_key_groups: int,
        group_results: Sequence[BaseException | None],
    ) -> None:
        self.required_successful_key_groups = required_successful_key_groups
        self.group_results = list(group_results)
        failures = [err for err in self.group_results if err is not None]
        successes = len(self.group_results) - len(failures)
        lines = [
            "Error getting data key: "
            f"{max(required_successful_key_groups, 1)} successful groups required, "
            f"got {successes}"
        ]
        for index, result in enumerate(self.group_results):
            status = "success" if result is None else f"FAILED - {result}"
            lines.append(f"Group {index}: {status}")
        super().__init__("\n".join(lines), failures)


class Cipher(Protocol):
    """Encrypts and decrypts single values under a data key."""

    def encrypt(self, plaintext: Any, key: bytes, additional_data: str) -> str:
        """Return plaintext encrypted with key, authenticated with additional_data."""

    def decrypt(self, ciphertext: str, key: bytes, additional_data: str) -> Any:
        """Return the plaintext of ciphertext, checked against additional_data."""


@runtime_checkable
class MasterKey(Protocol):
    """A key that can encrypt and decrypt the document's data key."""

    def encrypt(self, data_key: bytes) -> None:
        """Encrypt data_key and keep the result on the key."""

    def decrypt(self) -> bytes:
        """Return the data key decrypted from what the key holds."""

    def type_to_identifier(self) -> str:
        """Return the identifier of the key's type, such as "pgp"."""


def _key_name(key: Any) -> str:
    to_string = getattr(key, "to_string", None)
    if callable(to_string):
        return str(to_string())
    return str(key)


def _matches(pattern: str, text: str) -> bool:
    try:
        return re.search(pattern, text) is not None
    except re.error:
        return False


def sort_key_group_indices(group: Sequence[Any], decryption_order: Sequence[str]) -> list[int]:
    """Return the indices of group ordered by key type as in decryption_order.

    Types missing from the order come last; the sort is stable.
    """
    priorities = {identifier: rank for rank, identifier in enumerate(decryption_order)}
    lowest = len(decryption_order)
    return sorted(
        range(len(group)),
        key=lambda index: priorities.get(group[index].type_to_identifier(), lowest),
    )


def _decrypt_key(key: Any) -> bytes:
    try:
        return key.decrypt()
    except Exception as exc:
        raise SopsError(
            f"failed to decrypt data key with master key {_key_name(key)}: {exc}", [exc]
        ) from exc


def _decrypt_key_group(group: Sequence[Any], decryption_order: Sequence[str] | None) -> bytes:
    order = range(len(group)) if decryption_order is None else sort_key_group_indices(
        group, decryption_order
    )
    failures: list[BaseException] = []
    for index in order:
        try:
            return _decrypt_key(group[index])
        except SopsError as exc:
            failures.append(exc)
    if not failures:
        raise SopsError("no master keys in key group")
    raise SopsError("; ".join(str(err) for err in failures), failures)


@dataclass
class Metadata:
    """Encryption and integrity information about a document."""

    last_modified: datetime | None = None
    unencrypted_suffix: str = ""
    encrypted_suffix: str = ""
    unencrypted_regex: str = ""
    encrypted_regex: str = ""
    unencrypted_comment_regex: str = ""
    encrypted_comment_regex: str = ""
    message_authentication_code: str = ""
    mac_only_encrypted: bool = False
    version: str = ""
    key_groups: list[list[Any]] = field(default_factory=list)
    # Number of key groups needed to recover the data key.
    shamir_threshold: int = 0
    # The decrypted data key, when it is already known.
    data_key: bytes | None = None

    def master_key_count(self) -> int:
        """Return the number of master keys across all key groups."""
        return sum(len(group) for group in self.key_groups)

    def update_master_keys(self, data_key: bytes) -> None:
        """Encrypt data_key with every master key.

        Raises SopsError listing every master key that failed; the data key
        is still recorded when only individual keys failed.
        """
        if not self.key_groups:
            raise SopsError("no key groups provided")
        if len(self.key_groups) == 1:
            parts = [bytes(data_key)]
        else:
            if self.shamir_threshold == 0:
                self.shamir_threshold = len(self.key_groups)
            _log.info(
                "Splitting data key with Shamir Secret Sharing (quorum %d, parts %d)",
                self.shamir_threshold,
                len(self.key_groups),
            )
            try:
                parts = shamir.split(data_key, len(self.key_groups), self.shamir_threshold)
            except ValueError as exc:
                raise SopsError(
                    f"could not split data key into parts for Shamir: {exc}", [exc]
                ) from exc
            if len(parts) != len(self.key_groups):
                raise SopsError(
                    "not enough parts obtained from Shamir: "
                    f"need {len(self.key_groups)}, got {len(parts)}"
                )

        failures: list[BaseException] = []
        for group, part in zip(self.key_groups, parts):
            if not group:
                raise SopsError("empty key group provided")
            for key in group:
                try:
                    key.encrypt(part)
                except Exception as exc:
                    failures.append(
                        SopsError(
                            "failed to encrypt new data key with master key "
                            f"{json.dumps(_key_name(key))}: {exc}"
                        )
                    )
        self.data_key = bytes(data_key)
        if failures:
            raise SopsError("; ".join(str(err) for err in failures), failures)

    def get_data_key(self, decryption_order: Sequence[str] | None = None) -> bytes:
        """Recover the data key by decrypting the key groups.

        Within a group, keys are tried in decryption_order by type, or in
        their own order when it is None.
        """
        if self.data_key is not None:
            return self.data_key
        parts: list[bytes] = []
        results: list[BaseException | None] = []
        for group in self.key_groups:
            try:
                parts.append(_decrypt_key_group(group, decryption_order))
                results.append(None)
            except SopsError as exc:
                results.append(exc)

        if len(self.key_groups) > 1:
            if len(parts) < self.shamir_threshold:
                raise DataKeyError(self.shamir_threshold, results)
            try:
                data_key = shamir.combine(parts)
            except ValueError as exc:
                raise SopsError(f"could not get data key from shamir parts: {exc}", [exc]) from exc
        else:
            if len(parts) != 1:
                raise DataKeyError(self.shamir_threshold, results)
            data_key = parts[0]
        _log.info("Data key recovered successfully")
        return data_key


_LeafFunc = Callable[[Any, list, list], Any]


def _walk_value(value: Any, path: list[str], stack: list[list[str]], on_leaf: _LeafFunc) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return on_leaf(bytes(value).decode("utf-8", errors="surrogateescape"), path, stack)
    if isinstance(value, (str, bool, int, float, datetime, Comment)):
        return on_leaf(value, path, stack)
    if isinstance(value, TreeBranch):
        return _walk_branch(value, path, stack, on_leaf)
    if isinstance(value, list):
        return _walk_list(value, path, stack, on_leaf)
    if value is None:
        return None
    raise SopsError(f"Cannot walk value, unknown type: {type(value).__name__}")


def _walk_list(values: list, path: list[str], stack: list[list[str]], on_leaf: _LeafFunc) -> list:
    stack = [*stack, []]
    for index, value in enumerate(values):
        is_comment = isinstance(value, Comment)
        if is_comment:
            # Active comments govern the values that follow, comments included.
            stack[-1].append(value.value)
        values[index] = _walk_value(value, path, stack, on_leaf)
        if not is_comment:
            stack[-1] = []
    return values


def _walk_branch(
    branch: TreeBranch, path: list[str], stack: list[list[str]], on_leaf: _LeafFunc
) -> TreeBranch:
    stack = [*stack, []]
    for item in branch:
        if isinstance(item.key, Comment):
            stack[-1].append(item.key.value)
            result = _walk_value(item.key, path, stack, on_leaf)
            if isinstance(result, Comment):
                item.key = result
            elif isinstance(result, str):
                item.key = Comment(result)
            else:
                raise SopsError(
                    "walking a Comment should give either a Comment or a string, "
                    f"got {type(result).__name__}"
                )
            continue
        value_is_comment = isinstance(item.value, Comment)
        if value_is_comment:
            stack[-1].append(item.value.value)
        if not isinstance(item.key, str):
            raise SopsError(
                f"Tree contains a non-string key (type {type(item.key).__name__}): "
                f"{item.key}. Only string keys are supported"
            )
        item.value = _walk_value(item.value, [*path, item.key], stack, on_leaf)
        if not value_is_comment:
            stack[-1] = []
    return branch


@dataclass
class Tree:
    """A document: its data branches, metadata and source file path."""

    branches: list[TreeBranch] = field(default_factory=list)
    metadata: Metadata = field(default_factory=Metadata)
    file_path: str = ""

    def _should_be_encrypted(
        self, path: Sequence[str], stack: Sequence[Sequence[str]], is_comment: bool
    ) -> bool:
        meta = self.metadata
        encrypted = True
        if meta.unencrypted_suffix and any(
            part.endswith(meta.unencrypted_suffix) for part in path
        ):
            encrypted = False
        if meta.encrypted_suffix:
            encrypted = any(part.endswith(meta.encrypted_suffix) for part in path)
        if meta.unencrypted_regex and any(
            _matches(meta.unencrypted_regex, part) for part in path
        ):
            encrypted = False
        if meta.encrypted_regex:
            encrypted = any(_matches(meta.encrypted_regex, part) for part in path)
        if meta.unencrypted_comment_regex and any(
            _matches(meta.unencrypted_comment_regex, comment)
            for comments in stack
            for comment in comments
        ):
            encrypted = False
        if meta.encrypted_comment_regex:
            last_level = len(stack) - 1
            last_comment = len(stack[-1]) - 1
            encrypted = False
            for level, comments in enumerate(stack):
                for position, comment in enumerate(comments):
                    # A comment that matches is not encrypted itself; only an
                    # earlier matching comment encrypts it.
                    if is_comment and level == last_level and position == last_comment:
                        continue
                    if _matches(meta.encrypted_comment_regex, comment):
                        encrypted = True
                        break
                if encrypted:
                    break
        return encrypted

    def _new_mac(self) -> "hashlib._Hash":
        mac = hashlib.sha512()
        if self.metadata.mac_only_encrypted:
            mac.update(MAC_ONLY_ENCRYPTED_INITIALIZATION)
        return mac

    def _walk(self, on_leaf: _LeafFunc) -> None:
        for branch in self.branches:
            try:
                _walk_branch(branch, [], [], on_leaf)
            except Exception as exc:
                raise SopsError(f"Error walking tree: {exc}") from exc

    def encrypt(self, key: bytes, cipher: Cipher) -> str:
        """Encrypt the values selected by the metadata in place.

        Returns the MAC, as upper-case hex, over the cleartext values (or only
        those that got encrypted, if mac_only_encrypted is set).
        """
        mac = self._new_mac()
        meta = self.metadata

        def on_leaf(value: Any, path: list[str], stack: list[list[str]]) -> Any:
            is_comment = isinstance(value, Comment)
            encrypted = self._should_be_encrypted(path, stack, is_comment)
            if (not meta.mac_only_encrypted or encrypted) and not is_comment:
                try:
                    mac.update(to_bytes(value))
                except TypeError as exc:
                    raise SopsError(f"Could not convert {value} to bytes: {exc}") from exc
            if not encrypted:
                return value
            try:
                result = cipher.encrypt(value, key, ":".join(path) + ":")
            except Exception as exc:
                raise SopsError(f"Could not encrypt value: {exc}") from exc
            if (
                is_comment
                and meta.unencrypted_comment_regex
                and _matches(meta.unencrypted_comment_regex, str(result))
            ):
                # Such a comment would be left alone on decryption and the MAC would fail.
                raise SopsError(
                    f"Encrypted comment {json.dumps(result)} matches UnencryptedCommentRegex! "
                    "Make sure that UnencryptedCommentRegex cannot match an encrypted comment."
                )
            return result

        self._walk(on_leaf)
        return mac.hexdigest().upper()

    def decrypt(self, key: bytes, cipher: Cipher) -> str:
        """Decrypt the values selected by the metadata in place.

        Returns the MAC, as upper-case hex, over the decrypted values (or only
        those that were decrypted, if mac_only_encrypted is set).
        """
        _log.debug("Decrypting tree")
        mac = self._new_mac()
        meta = self.metadata

        def on_leaf(value: Any, path: list[str], stack: list[list[str]]) -> Any:
            is_comment = isinstance(value, Comment)
            encrypted = self._should_be_encrypted(path, stack, is_comment)
            result = value
            if encrypted:
                additional_data = ":".join(path) + ":"
                if is_comment:
                    try:
                        result = cipher.decrypt(value.value, key, additional_data)
                    except Exception:
                        _log.warning(
                            "Found possibly unencrypted comment %r in file. This is to be "
                            "expected if the file being decrypted was created with an "
                            "older version.",
                            value.value,
                        )
                        result = value
                else:
                    if not isinstance(value, str):
                        raise SopsError(
                            "Could not decrypt value: expected a string, "
                            f"got {type(value).__name__}"
                        )
                    try:
                        result = cipher.decrypt(value, key, additional_data)
                    except Exception as exc:
                        raise SopsError(f"Could not decrypt value: {exc}") from exc
            if (not meta.mac_only_encrypted or encrypted) and not isinstance(result, Comment):
                try:
                    mac.update(to_bytes(result))
                except TypeError as exc:
                    raise SopsError(f"Could not convert {value} to bytes: {exc}") from exc
            return result

        self._walk(on_leaf)
        return mac.hexdigest().upper()

    def generate_data_key(self) -> bytes:
        """Create a random data key and encrypt it with all master keys."""
        data_key = secrets.token_bytes(DATA_KEY_SIZE)
        self.metadata.update_master_keys(data_key)
        return data_key