"""
Identity Key Management

Every identity owns two keypairs:
- an ECDH P-256 agreement keypair, used to derive per-message key-encryption keys
- an RSA-4096 OAEP encapsulation keypair, the fallback for wrapping message keys

Keys travel in JWK form. Public keys are published together with a
fingerprint over both of them; private keys stay on the device.
"""

import json
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Union

from cryptography.hazmat.primitives.asymmetric import ec, rsa

from .hashing import sha256_hex
from .primitives import (
    EncodingError,
    KeyFormatError,
    b64url_decode,
    b64url_encode,
    bytes_to_int,
    int_to_bytes,
)

logger = logging.getLogger(__name__)

AGREEMENT_CURVE_NAME = "P-256"
COORDINATE_SIZE = 32
RSA_KEY_SIZE = 4096
RSA_PUBLIC_EXPONENT = 65537
RSA_JWK_ALG = "RSA-OAEP-256"
MIN_RSA_KEY_SIZE = 2048

AgreementPrivateKey = ec.EllipticCurvePrivateKey
AgreementPublicKey = ec.EllipticCurvePublicKey
EncapsulationPrivateKey = rsa.RSAPrivateKey
EncapsulationPublicKey = rsa.RSAPublicKey

JWK = Dict[str, str]


@dataclass
class Keypair:
    """A private key together with its public half"""
    private_key: object
    public_key: object


def generate_agreement_keypair() -> Keypair:
    """
    Generate an ECDH P-256 keypair for key agreement.

    Returns:
        Keypair of (EllipticCurvePrivateKey, EllipticCurvePublicKey)
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    return Keypair(private_key=private_key, public_key=private_key.public_key())


def generate_encapsulation_keypair(key_size: int = RSA_KEY_SIZE) -> Keypair:
    """
    Generate an RSA-OAEP keypair for direct key wrapping.

    This takes hundreds of milliseconds at 4096 bits; run it once per
    identity and persist the result.

    Returns:
        Keypair of (RSAPrivateKey, RSAPublicKey)
    """
    private_key = rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=key_size)
    return Keypair(private_key=private_key, public_key=private_key.public_key())


def _b64url_int(value: int, length: Optional[int] = None) -> str:
    return b64url_encode(int_to_bytes(value, length))


def export_public(key) -> JWK:
    """
    Export the public half of an agreement or encapsulation key as a JWK.

    Accepts either the public key or its private key.
    """
    if isinstance(key, (ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey)):
        key = key.public_key()

    if isinstance(key, ec.EllipticCurvePublicKey):
        if not isinstance(key.curve, ec.SECP256R1):
            raise KeyFormatError(f"Unsupported curve: {key.curve.name}")
        numbers = key.public_numbers()
        return {
            "kty": "EC",
            "crv": AGREEMENT_CURVE_NAME,
            "x": _b64url_int(numbers.x, COORDINATE_SIZE),
            "y": _b64url_int(numbers.y, COORDINATE_SIZE),
        }

    if isinstance(key, rsa.RSAPublicKey):
        numbers = key.public_numbers()
        return {
            "kty": "RSA",
            "alg": RSA_JWK_ALG,
            "n": _b64url_int(numbers.n),
            "e": _b64url_int(numbers.e),
        }

    raise KeyFormatError(f"Unsupported key type: {type(key).__name__}")


def export_private(key) -> JWK:
    """Export an agreement or encapsulation private key as a JWK"""
    jwk = export_public(key)

    if isinstance(key, ec.EllipticCurvePrivateKey):
        jwk["d"] = _b64url_int(key.private_numbers().private_value, COORDINATE_SIZE)
        return jwk

    if isinstance(key, rsa.RSAPrivateKey):
        numbers = key.private_numbers()
        jwk.update({
            "d": _b64url_int(numbers.d),
            "p": _b64url_int(numbers.p),
            "q": _b64url_int(numbers.q),
            "dp": _b64url_int(numbers.dmp1),
            "dq": _b64url_int(numbers.dmq1),
            "qi": _b64url_int(numbers.iqmp),
        })
        return jwk

    raise KeyFormatError("Not a private key")


def _member(jwk: JWK, name: str) -> bytes:
    if name not in jwk:
        raise KeyFormatError(f"JWK is missing '{name}'")
    try:
        value = b64url_decode(jwk[name])
    except EncodingError as e:
        raise KeyFormatError(f"JWK member '{name}' is not base64url: {e}") from e
    if not value:
        raise KeyFormatError(f"JWK member '{name}' is empty")
    return value


def _check_ec(jwk: JWK) -> None:
    if not isinstance(jwk, dict):
        raise KeyFormatError("JWK must be a JSON object")
    if jwk.get("kty") != "EC":
        raise KeyFormatError(f"Expected an EC key, got kty={jwk.get('kty')!r}")
    if jwk.get("crv") != AGREEMENT_CURVE_NAME:
        raise KeyFormatError(f"Expected curve {AGREEMENT_CURVE_NAME}, got {jwk.get('crv')!r}")


def _check_rsa(jwk: JWK) -> None:
    if not isinstance(jwk, dict):
        raise KeyFormatError("JWK must be a JSON object")
    if jwk.get("kty") != "RSA":
        raise KeyFormatError(f"Expected an RSA key, got kty={jwk.get('kty')!r}")
    if "alg" in jwk and jwk["alg"] != RSA_JWK_ALG:
        raise KeyFormatError(f"Expected alg {RSA_JWK_ALG}, got {jwk['alg']!r}")


def _ec_public_numbers(jwk: JWK) -> ec.EllipticCurvePublicNumbers:
    x = _member(jwk, "x")
    y = _member(jwk, "y")
    if len(x) != COORDINATE_SIZE or len(y) != COORDINATE_SIZE:
        raise KeyFormatError("P-256 coordinates must be 32 bytes")
    return ec.EllipticCurvePublicNumbers(bytes_to_int(x), bytes_to_int(y), ec.SECP256R1())


def import_agreement_public(jwk: JWK) -> AgreementPublicKey:
    """
    Import an ECDH P-256 public key from a JWK.

    Raises:
        KeyFormatError: If the JWK is malformed, not P-256, or off the curve
    """
    _check_ec(jwk)
    try:
        return _ec_public_numbers(jwk).public_key()
    except ValueError as e:
        if isinstance(e, KeyFormatError):
            raise
        raise KeyFormatError(f"Invalid P-256 public key: {e}") from e


def import_agreement_private(jwk: JWK) -> AgreementPrivateKey:
    """Import an ECDH P-256 private key from a JWK"""
    _check_ec(jwk)
    try:
        public_numbers = _ec_public_numbers(jwk)
        d = _member(jwk, "d")
        if len(d) != COORDINATE_SIZE:
            raise KeyFormatError("P-256 private scalar must be 32 bytes")
        return ec.EllipticCurvePrivateNumbers(bytes_to_int(d), public_numbers).private_key()
    except ValueError as e:
        if isinstance(e, KeyFormatError):
            raise
        raise KeyFormatError(f"Invalid P-256 private key: {e}") from e


def _rsa_public_numbers(jwk: JWK) -> rsa.RSAPublicNumbers:
    n = bytes_to_int(_member(jwk, "n"))
    e = bytes_to_int(_member(jwk, "e"))
    if n.bit_length() < MIN_RSA_KEY_SIZE:
        raise KeyFormatError(f"RSA modulus must be at least {MIN_RSA_KEY_SIZE} bits")
    return rsa.RSAPublicNumbers(e, n)


def import_encapsulation_public(jwk: JWK) -> EncapsulationPublicKey:
    """
    Import an RSA-OAEP public key from a JWK.

    Raises:
        KeyFormatError: If the JWK is malformed, not RSA, or not RSA-OAEP-256
    """
    _check_rsa(jwk)
    try:
        return _rsa_public_numbers(jwk).public_key()
    except ValueError as e:
        if isinstance(e, KeyFormatError):
            raise
        raise KeyFormatError(f"Invalid RSA public key: {e}") from e


def import_encapsulation_private(jwk: JWK) -> EncapsulationPrivateKey:
    """
    Import an RSA-OAEP private key from a JWK.

    The CRT members are optional; they are recomputed from n, e and d when absent.
    """
    _check_rsa(jwk)
    try:
        public_numbers = _rsa_public_numbers(jwk)
        d = bytes_to_int(_member(jwk, "d"))

        if all(name in jwk for name in ("p", "q", "dp", "dq", "qi")):
            p = bytes_to_int(_member(jwk, "p"))
            q = bytes_to_int(_member(jwk, "q"))
            dmp1 = bytes_to_int(_member(jwk, "dp"))
            dmq1 = bytes_to_int(_member(jwk, "dq"))
            iqmp = bytes_to_int(_member(jwk, "qi"))
        else:
            p, q = rsa.rsa_recover_prime_factors(public_numbers.n, public_numbers.e, d)
            dmp1 = rsa.rsa_crt_dmp1(d, p)
            dmq1 = rsa.rsa_crt_dmq1(d, q)
            iqmp = rsa.rsa_crt_iqmp(p, q)

        return rsa.RSAPrivateNumbers(p, q, d, dmp1, dmq1, iqmp, public_numbers).private_key()
    except ValueError as e:
        if isinstance(e, KeyFormatError):
            raise
        raise KeyFormatError(f"Invalid RSA private key: {e}") from e


def canonical_jwk(jwk: JWK) -> str:
    """Sorted-key compact JSON; the byte-exact form fingerprints are taken over"""
    return json.dumps(jwk, sort_keys=True, separators=(",", ":"))


def _public_jwk(key_or_jwk, importer) -> JWK:
    # Re-exporting drops optional members (ext, key_ops, ...) so every party
    # hashes the same text for the same key.
    if isinstance(key_or_jwk, dict):
        key_or_jwk = importer(key_or_jwk)
    return export_public(key_or_jwk)


def fingerprint(agreement_public: Union[AgreementPublicKey, JWK],
                encapsulation_public: Union[EncapsulationPublicKey, JWK]) -> str:
    """
    Compute the identity fingerprint.

    SHA-256 over canonical(agreement JWK) followed by canonical(encapsulation
    JWK). The order matters: swapping the keys gives a different fingerprint.

    Args:
        agreement_public: ECDH public key or its JWK
        encapsulation_public: RSA public key or its JWK

    Returns:
        64-character hex fingerprint
    """
    agreement_jwk = _public_jwk(agreement_public, import_agreement_public)
    encapsulation_jwk = _public_jwk(encapsulation_public, import_encapsulation_public)
    return sha256_hex(canonical_jwk(agreement_jwk) + canonical_jwk(encapsulation_jwk))


def format_fingerprint(value: str, group: int = 4) -> str:
    """Split a hex fingerprint into groups for reading aloud"""
    return " ".join(value[i:i + group] for i in range(0, len(value), group)).upper()


@dataclass
class PublicIdentity:
    """
    Public identity record published to the directory.

    Attributes:
        user_id: Owner of the record
        encapsulation_public_jwk: RSA-OAEP public key
        fingerprint: Hex fingerprint over both public keys
        agreement_public_jwk: ECDH public key; None for peers that only
            published an encapsulation key
        display_name: Optional human-readable name
    """
    user_id: str
    encapsulation_public_jwk: JWK
    fingerprint: str
    agreement_public_jwk: Optional[JWK] = None
    display_name: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def agreement_public_key(self) -> Optional[AgreementPublicKey]:
        """Imported ECDH key, or None when the peer has none on record"""
        if self.agreement_public_jwk is None:
            return None
        return import_agreement_public(self.agreement_public_jwk)

    def encapsulation_public_key(self) -> EncapsulationPublicKey:
        return import_encapsulation_public(self.encapsulation_public_jwk)

    def compute_fingerprint(self) -> Optional[str]:
        if self.agreement_public_jwk is None:
            return None
        return fingerprint(self.agreement_public_jwk, self.encapsulation_public_jwk)

    def verify_fingerprint(self) -> bool:
        """Recompute the fingerprint from the published keys and compare"""
        try:
            computed = self.compute_fingerprint()
        except KeyFormatError as e:
            logger.warning("Cannot verify fingerprint of %s: %s", self.user_id, e)
            return False
        return computed is not None and computed == self.fingerprint

    def to_dict(self) -> Dict:
        """Convert to the directory's JSON shape"""
        return {
            'user_id': self.user_id,
            'display_name': self.display_name,
            'ecdh_public_key_jwk': self.agreement_public_jwk,
            'rsa_public_key_jwk': self.encapsulation_public_jwk,
            'fingerprint': self.fingerprint,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PublicIdentity':
        """Create from the directory's JSON shape"""
        try:
            return cls(
                user_id=data['user_id'],
                display_name=data.get('display_name'),
                agreement_public_jwk=data.get('ecdh_public_key_jwk'),
                encapsulation_public_jwk=data['rsa_public_key_jwk'],
                fingerprint=data['fingerprint'],
                created_at=data.get('created_at'),
                updated_at=data.get('updated_at'),
            )
        except (KeyError, TypeError) as e:
            raise KeyFormatError(f"Malformed identity record: {e}") from e


@dataclass
class IdentityKeys:
    """
    Both keypairs of one identity.

    This is the session-scoped key material a client holds in memory after
    unlocking its store; it is passed explicitly into every envelope call.
    """
    agreement: Keypair
    encapsulation: Keypair

    @classmethod
    def generate(cls, rsa_key_size: int = RSA_KEY_SIZE) -> 'IdentityKeys':
        return cls(
            agreement=generate_agreement_keypair(),
            encapsulation=generate_encapsulation_keypair(rsa_key_size),
        )

    @classmethod
    def from_private_jwks(cls, agreement_jwk: JWK, encapsulation_jwk: JWK) -> 'IdentityKeys':
        agreement_private = import_agreement_private(agreement_jwk)
        encapsulation_private = import_encapsulation_private(encapsulation_jwk)
        return cls(
            agreement=Keypair(agreement_private, agreement_private.public_key()),
            encapsulation=Keypair(encapsulation_private, encapsulation_private.public_key()),
        )

    @property
    def agreement_private(self) -> AgreementPrivateKey:
        return self.agreement.private_key

    @property
    def encapsulation_private(self) -> EncapsulationPrivateKey:
        return self.encapsulation.private_key

    def fingerprint(self) -> str:
        return fingerprint(self.agreement.public_key, self.encapsulation.public_key)

    def public_identity(self, user_id: str, display_name: Optional[str] = None) -> PublicIdentity:
        """Build the record to publish for this identity"""
        return PublicIdentity(
            user_id=user_id,
            display_name=display_name,
            agreement_public_jwk=export_public(self.agreement.public_key),
            encapsulation_public_jwk=export_public(self.encapsulation.public_key),
            fingerprint=self.fingerprint(),
        )

    def private_jwks(self) -> Dict[str, JWK]:
        return {
            'agreement': export_private(self.agreement.private_key),
            'encapsulation': export_private(self.encapsulation.private_key),
        }


def generate_identity_keys() -> IdentityKeys:
    """Generate both keypairs for a new identity"""
    return IdentityKeys.generate()
