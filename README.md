# secretree

`secretree` encrypts the values of a structured document (a tree of keys,
values, lists and comments) while leaving the keys readable. One random
32-byte data key encrypts every value. The data key is itself encrypted with
one or more master keys. A SHA-512 message authentication code over the
values, taken in order, lets you detect tampering.

## Modules

- `secretree.tree` holds the document tree.
  - `TreeBranch` is an ordered list of `TreeItem`s, and `Comment` represents a comment.
  - `TreeBranch.set(path, value)` returns the branch and a flag that says whether anything changed.
  - `TreeBranch.unset(path)` raises `KeyNotFoundError` when the path is missing.
  - `TreeBranch.truncate(path)` returns the part of the tree found at `path`.
  - `equals` compares two trees by structure. `to_bytes` gives the byte form of a leaf that goes into the MAC. `emit_as_map` turns branches into a plain `dict` and drops comments.
- `secretree.document` holds `Tree` and `Metadata`.
  - `Tree.encrypt(key, cipher)` and `Tree.decrypt(key, cipher)` walk the tree in place and return the MAC as upper-case hex.
  - A cipher is any object with `encrypt(plaintext, key, additional_data)` and `decrypt(ciphertext, key, additional_data)`.
  - `Metadata` chooses which values get encrypted:
    - `unencrypted_suffix` and `encrypted_suffix` match the end of a key.
    - `unencrypted_regex` and `encrypted_regex` match keys.
    - `unencrypted_comment_regex` and `encrypted_comment_regex` match the comments that come before a value.
  - Set `mac_only_encrypted` to make the MAC cover only the values that get encrypted.
  - `Metadata.key_groups` holds lists of master keys. `update_master_keys` encrypts a data key with every master key. When there is more than one group, it first splits the key with Shamir's scheme, and `shamir_threshold` groups are then needed to recover it.
  - `get_data_key(decryption_order=None)` recovers the data key. It raises `DataKeyError` when too few groups can be decrypted.
  - `Tree.generate_data_key()` makes a new data key and encrypts it with all master keys.
  - `sort_key_group_indices` orders a group's keys by type.
  - Failures raise `SopsError`.
- `secretree.shamir` does Shamir secret sharing over GF(2^8) with `split(secret, parts, threshold)` and `combine(parts)`.
- `secretree.pgp` provides a PGP `MasterKey` that encrypts and decrypts the data key by running the `gpg` binary.
  - Set `SOPS_GPG_EXEC` to run a different binary.
  - `new_gnupg_home()` creates a temporary keyring directory with mode 0700. `GnuPGHome.import_key` / `import_file` load keys into it, and `cleanup` removes it.
  - `GnuPGHome.apply_to_master_key` makes a key's `gpg` calls use that directory.
  - Failures raise `PgpError`.
- `secretree.publish` provides `VaultDestination`, which writes decrypted data as a secret in a Vault key/value engine (version 1 or 2).
  - The server address comes from the constructor, then from `VAULT_ADDR`, and otherwise defaults to `https://127.0.0.1:8200`.
  - A token is sent from `VAULT_TOKEN`.
  - Nothing is written when the stored secret already holds the same data.
  - `upload` of encrypted contents raises `NotImplementedDestinationError`.

## Installation

```
pip install secretree
```

To install with the test dependencies:

```
pip install "secretree[test]"
```

## Examples

Encrypting a tree with a toy cipher:

```python
from secretree.tree import TreeBranch, TreeItem
from secretree.document import Metadata, Tree


class Reverse:
    def encrypt(self, value, key, additional_data):
        return str(value)[::-1]

    def decrypt(self, value, key, additional_data):
        return value[::-1]


branch = TreeBranch([
    TreeItem("user", "alice"),
    TreeItem("note_unencrypted", "visible"),
])
tree = Tree(branches=[branch], metadata=Metadata(unencrypted_suffix="_unencrypted"))

data_key = bytes(32)
mac = tree.encrypt(data_key, Reverse())
assert branch[0].value == "ecila" and branch[1].value == "visible"
assert mac == tree.decrypt(data_key, Reverse())
```

Splitting a secret:

```python
from secretree import shamir

shares = shamir.split(b"secret", 5, 3)
assert shamir.combine(shares[:3]) == b"secret"
```

Protecting a data key with a PGP key (needs `gpg` and the public key in the keyring):

```python
from secretree.document import Metadata, Tree
from secretree.pgp import new_master_key_from_fingerprint

key = new_master_key_from_fingerprint("0123456789ABCDEF0123456789ABCDEF01234567")
tree = Tree(metadata=Metadata(key_groups=[[key]]))
data_key = tree.generate_data_key()
```

Where a secret goes in Vault:

```python
from secretree.publish import VaultDestination

dest = VaultDestination("http://localhost:8200", "apps")
assert dest.path("db") == "http://localhost:8200/v1/secret/data/apps/db"
```

## What it does not do

- There is no command-line tool.
- It does not read or write JSON, YAML or other file formats. Trees are built in code.
- It provides no value cipher. You pass your own object with `encrypt` and `decrypt`.
- PGP is the only master key type provided, and it works only through the `gpg` binary.
- Vault is the only publishing destination.