"""
BIP32 HD key derivation.

Keys may be private (derived from a seed or an xprv) or public only
(an account xpub). Watch-only discovery uses public derivation exclusively;
private keys only appear in the optional AccountSigner collaborator.
"""

from __future__ import annotations

import hashlib
import hmac

import base58
from coincurve import PrivateKey, PublicKey

from watchwallet.models import NETWORK_PARAMS, NetworkType, get_network_params
from watchwallet.wallet.address import hash160

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED = 0x80000000


class ExtendedKeyError(ValueError):
    pass


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 derivation.
    """

    def __init__(
        self,
        chain_code: bytes,
        private_key: PrivateKey | None = None,
        public_key: PublicKey | None = None,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00" * 4,
        child_number: int = 0,
    ):
        if private_key is None and public_key is None:
            raise ValueError("HDKey needs a private or a public key")
        self._private_key = private_key
        self._public_key = public_key if public_key is not None else private_key.public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    @property
    def private_key(self) -> PrivateKey | None:
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        return self._public_key

    @property
    def is_private(self) -> bool:
        return self._private_key is not None

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.get_public_key_bytes())[:4]

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(hmac_result[32:], private_key=PrivateKey(hmac_result[:32]))

    @classmethod
    def from_extended_key(cls, encoded: str) -> HDKey:
        """
        Parse a base58check xpub/xprv (or the ypub/zpub/tpub/... variants).

        Raises:
            ExtendedKeyError: on bad checksum, length or version bytes
        """
        try:
            data = base58.b58decode_check(encoded)
        except ValueError as e:
            raise ExtendedKeyError(f"Invalid extended key checksum: {e}") from e

        if len(data) != 78:
            raise ExtendedKeyError(f"Invalid extended key length: {len(data)}")

        version = data[:4]
        depth = data[4]
        parent_fingerprint = data[5:9]
        child_number = int.from_bytes(data[9:13], "big")
        chain_code = data[13:45]
        key_data = data[45:78]

        public_versions = {v for p in NETWORK_PARAMS.values() for v in p.xpub_versions}
        private_versions = {v for p in NETWORK_PARAMS.values() for v in p.xprv_versions}

        try:
            if version in private_versions:
                if key_data[0] != 0:
                    raise ExtendedKeyError("Private key data must start with 0x00")
                return cls(
                    chain_code,
                    private_key=PrivateKey(key_data[1:]),
                    depth=depth,
                    parent_fingerprint=parent_fingerprint,
                    child_number=child_number,
                )
            if version in public_versions:
                return cls(
                    chain_code,
                    public_key=PublicKey(key_data),
                    depth=depth,
                    parent_fingerprint=parent_fingerprint,
                    child_number=child_number,
                )
        except ValueError as e:
            raise ExtendedKeyError(f"Invalid key material: {e}") from e

        raise ExtendedKeyError(f"Unknown extended key version: {version.hex()}")

    def to_extended_key(
        self,
        network: NetworkType | str = NetworkType.MAINNET,
        private: bool | None = None,
        version: bytes | None = None,
    ) -> str:
        """Serialize as xprv/xpub (tprv/tpub off mainnet) unless a version is given."""
        private = self.is_private if private is None else private
        if private and not self.is_private:
            raise ValueError("Cannot serialize a public key as xprv")

        params = get_network_params(network)
        if version is None:
            version = params.xprv_versions[0] if private else params.xpub_versions[0]

        key_data = (
            b"\x00" + self._private_key.secret if private else self.get_public_key_bytes()
        )
        payload = (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + key_data
        )
        return base58.b58encode_check(payload).decode("ascii")

    def neutered(self) -> HDKey:
        """Public-only copy of this key."""
        return HDKey(
            self.chain_code,
            public_key=self._public_key,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
        )

    def derive(self, path: str) -> HDKey:
        """
        Derive a descendant from path notation.

        Accepts absolute ("m/84'/0'/0'/0/0") or relative ("0/5") paths;
        ' or h marks hardened steps.
        """
        parts = path.split("/")
        if parts[0] == "m":
            parts = parts[1:]

        key = self
        for part in parts:
            if not part:
                continue

            hardened = part.endswith("'") or part.endswith("h")
            index = int(part.rstrip("'h"))
            if hardened:
                index += HARDENED

            key = key.derive_child(index)

        return key

    def derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        hardened = index >= HARDENED

        if hardened:
            if self._private_key is None:
                raise ValueError("Cannot derive hardened child from a public key")
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.get_public_key_bytes() + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        if int.from_bytes(key_offset, "big") >= SECP256K1_N:
            raise ValueError("Invalid child key")

        if self._private_key is not None:
            parent_key_int = int.from_bytes(self._private_key.secret, "big")
            child_key_int = (parent_key_int + int.from_bytes(key_offset, "big")) % SECP256K1_N
            if child_key_int == 0:
                raise ValueError("Invalid child key")
            return HDKey(
                child_chain,
                private_key=PrivateKey(child_key_int.to_bytes(32, "big")),
                depth=self.depth + 1,
                parent_fingerprint=self.fingerprint,
                child_number=index,
            )

        return HDKey(
            child_chain,
            public_key=self._public_key.add(key_offset),
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
        )

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        return self._public_key.format(compressed=compressed)

    def sign_digest(self, digest: bytes) -> bytes:
        """DER-encoded ECDSA signature over an already-hashed 32-byte digest."""
        if self._private_key is None:
            raise ValueError("Public-only key cannot sign")
        return self._private_key.sign(digest, hasher=None)


class AccountSigner:
    """
    Signing collaborator bound to an account-level private key.

    Called with a path relative to the account ("chain/index") and a
    sighash digest; returns a DER signature.
    """

    def __init__(self, account_key: HDKey):
        if not account_key.is_private:
            raise ValueError("AccountSigner needs a private account key")
        self.account_key = account_key

    def public_key(self, path: str) -> bytes:
        return self.account_key.derive(path).get_public_key_bytes()

    def __call__(self, path: str, digest: bytes) -> bytes:
        return self.account_key.derive(path).sign_digest(digest)


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """
    Convert BIP39 mnemonic to seed.
    The wordlist checksum is not validated.
    """
    from hashlib import pbkdf2_hmac

    mnemonic_bytes = mnemonic.encode("utf-8")
    salt = ("mnemonic" + passphrase).encode("utf-8")

    return pbkdf2_hmac("sha512", mnemonic_bytes, salt, 2048, dklen=64)
