# ra/csr.py

from dataclasses import dataclass
from typing import Optional, Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from cryptography.x509.oid import NameOID

from ra.errors import InvalidCSR

MIN_RSA_BITS = 2048

_ALLOWED_CURVES = (ec.SECP256R1, ec.SECP384R1, ec.SECP521R1)


@dataclass(frozen=True)
class ParsedSubject:
    common_name: Optional[str]
    organization: Optional[str]
    email: Optional[str]
    key_algorithm: str
    key_size: Optional[int]


def _single_attribute(name: x509.Name, oid, label: str) -> Optional[str]:
    attrs = name.get_attributes_for_oid(oid)
    if not attrs:
        return None
    if len(attrs) > 1:
        raise InvalidCSR("subject carries %d %s attributes" % (len(attrs), label))
    value = attrs[0].value
    if isinstance(value, bytes):
        raise InvalidCSR("subject %s is not a string" % label)
    return value


def _describe_key(public_key):
    if isinstance(public_key, rsa.RSAPublicKey):
        if public_key.key_size < MIN_RSA_BITS:
            raise InvalidCSR("RSA key of %d bits is below the %d bit minimum" % (public_key.key_size, MIN_RSA_BITS))
        return "RSA", public_key.key_size
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        if not isinstance(public_key.curve, _ALLOWED_CURVES):
            raise InvalidCSR("unsupported elliptic curve %s" % public_key.curve.name)
        return "EC", public_key.key_size
    if isinstance(public_key, ed25519.Ed25519PublicKey):
        return "Ed25519", None
    if isinstance(public_key, ed448.Ed448PublicKey):
        return "Ed448", None
    raise InvalidCSR("unsupported key algorithm %s" % type(public_key).__name__)


def validate(csr_pem: Union[str, bytes]) -> ParsedSubject:
    """Parse and verify a PEM encoded CSR.

    :raises InvalidCSR: malformed PEM, unsupported or weak key, bad
        self-signature, or an ambiguous subject.
    """
    if isinstance(csr_pem, str):
        csr_pem = csr_pem.encode("utf-8")
    if not csr_pem or not csr_pem.strip():
        raise InvalidCSR("empty certificate signing request")

    try:
        csr = x509.load_pem_x509_csr(csr_pem)
    except ValueError as e:
        raise InvalidCSR("malformed certificate signing request: %s" % e) from e

    try:
        key_algorithm, key_size = _describe_key(csr.public_key())
        signature_ok = csr.is_signature_valid
    except (UnsupportedAlgorithm, ValueError) as e:
        raise InvalidCSR("unsupported key or signature algorithm: %s" % e) from e
    if not signature_ok:
        raise InvalidCSR("signature does not verify against the embedded public key")

    subject = csr.subject
    return ParsedSubject(
        common_name=_single_attribute(subject, NameOID.COMMON_NAME, "commonName"),
        organization=_single_attribute(subject, NameOID.ORGANIZATION_NAME, "organizationName"),
        email=_single_attribute(subject, NameOID.EMAIL_ADDRESS, "emailAddress"),
        key_algorithm=key_algorithm,
        key_size=key_size,
    )
