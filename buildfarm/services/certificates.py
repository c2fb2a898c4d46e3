"""
BuildKit Certificate Issuer

Generates the mutual-TLS material a build farm needs:
- CA certificate and key (RSA 3072, self-signed, 10 years)
- Server certificate for buildkitd, with optional DNS / IP SANs (800 days)
- Client certificate for buildctl / docker buildx (800 days)

Server and client certificates go through a CSR that the CA signs, so both
peers always chain to the same authority. The CA certificate, server
certificate and server key are what BuildkitBuilder mounts into the daemons.
"""

import datetime
import ipaddress
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..config import get_settings

logger = logging.getLogger(__name__)


class CertificateError(Exception):
    """Raised when certificate material cannot be generated, signed or loaded."""
    pass


CA_KEY_BITS = 3072
CA_ALLOWED_USES = ["cert_signing"]

CERT_ORGANIZATION = "Buildkit development certificate"
SERVER_ALLOWED_USES = ["key_encipherment", "digital_signature", "server_auth"]
CLIENT_ALLOWED_USES = ["key_encipherment", "digital_signature", "client_auth"]

DEFAULT_CA_COMMON_NAME = "buildkit-ca"
DEFAULT_CA_ORGANIZATION = "Buildkit development CA"

# File names used when certificate material is persisted to a directory
CA_CERT_FILE = "ca.pem"
CA_KEY_FILE = "ca-key.pem"
SERVER_CERT_FILE = "server-cert.pem"
SERVER_KEY_FILE = "server-key.pem"
CLIENT_CERT_FILE = "client-cert.pem"
CLIENT_KEY_FILE = "client-key.pem"


# =============================================================================
# Key Algorithms
# =============================================================================

_ECDSA_CURVES = {
    "P224": ec.SECP224R1,
    "P256": ec.SECP256R1,
    "P384": ec.SECP384R1,
    "P521": ec.SECP521R1,
}


@dataclass(frozen=True)
class RsaKeyAlgorithm:
    """RSA key generation parameters."""

    bits: int = 2048

    name = "RSA"

    def generate(self) -> rsa.RSAPrivateKey:
        return rsa.generate_private_key(public_exponent=65537, key_size=self.bits)


@dataclass(frozen=True)
class EcdsaKeyAlgorithm:
    """ECDSA key generation parameters."""

    curve: str = "P256"

    name = "ECDSA"

    def generate(self) -> ec.EllipticCurvePrivateKey:
        curve = _ECDSA_CURVES.get(self.curve)
        if curve is None:
            raise CertificateError(f"Unsupported ECDSA curve: {self.curve}")
        return ec.generate_private_key(curve())


KeyAlgorithm = Union[RsaKeyAlgorithm, EcdsaKeyAlgorithm]


def key_algorithm_from_name(name: Optional[str]) -> KeyAlgorithm:
    """
    Resolve a key algorithm selector into its parameters.

    Args:
        name: "RSA" (default when None) or "ECDSA"

    Returns:
        RsaKeyAlgorithm(bits=2048) or EcdsaKeyAlgorithm(curve="P256")

    Raises:
        CertificateError: For any other selector
    """
    if name is None or name == RsaKeyAlgorithm.name:
        return RsaKeyAlgorithm()
    if name == EcdsaKeyAlgorithm.name:
        return EcdsaKeyAlgorithm()
    raise CertificateError(f"Unsupported key algorithm: {name!r} (expected 'RSA' or 'ECDSA')")


# =============================================================================
# Subjects and Usages
# =============================================================================

@dataclass
class CertificateSubject:
    """Distinguished name fields for a certificate subject. Empty fields are omitted."""

    common_name: Optional[str] = None
    organization: Optional[str] = None
    organizational_unit: Optional[str] = None
    country: Optional[str] = None
    province: Optional[str] = None
    locality: Optional[str] = None
    street_address: Optional[str] = None
    postal_code: Optional[str] = None
    serial_number: Optional[str] = None

    def to_name(self) -> x509.Name:
        pairs = [
            (NameOID.COMMON_NAME, self.common_name),
            (NameOID.ORGANIZATION_NAME, self.organization),
            (NameOID.ORGANIZATIONAL_UNIT_NAME, self.organizational_unit),
            (NameOID.COUNTRY_NAME, self.country),
            (NameOID.STATE_OR_PROVINCE_NAME, self.province),
            (NameOID.LOCALITY_NAME, self.locality),
            (NameOID.STREET_ADDRESS, self.street_address),
            (NameOID.POSTAL_CODE, self.postal_code),
            (NameOID.SERIAL_NUMBER, self.serial_number),
        ]
        try:
            return x509.Name([x509.NameAttribute(oid, value) for oid, value in pairs if value])
        except ValueError as e:
            raise CertificateError(f"Invalid certificate subject: {e}") from e


def default_ca_subject() -> CertificateSubject:
    return CertificateSubject(
        common_name=DEFAULT_CA_COMMON_NAME,
        organization=DEFAULT_CA_ORGANIZATION,
    )


_KEY_USAGE_FLAGS = {
    "digital_signature": "digital_signature",
    "content_commitment": "content_commitment",
    "key_encipherment": "key_encipherment",
    "data_encipherment": "data_encipherment",
    "key_agreement": "key_agreement",
    "cert_signing": "key_cert_sign",
    "crl_signing": "crl_sign",
    "encipher_only": "encipher_only",
    "decipher_only": "decipher_only",
}

_EXTENDED_KEY_USAGES = {
    "server_auth": ExtendedKeyUsageOID.SERVER_AUTH,
    "client_auth": ExtendedKeyUsageOID.CLIENT_AUTH,
    "code_signing": ExtendedKeyUsageOID.CODE_SIGNING,
    "email_protection": ExtendedKeyUsageOID.EMAIL_PROTECTION,
    "timestamping": ExtendedKeyUsageOID.TIME_STAMPING,
    "ocsp_signing": ExtendedKeyUsageOID.OCSP_SIGNING,
}


def _add_usage_extensions(
    builder: x509.CertificateBuilder,
    allowed_uses: Iterable[str]
) -> x509.CertificateBuilder:
    """Translate allowed-use names (e.g. "server_auth") into KeyUsage / ExtendedKeyUsage."""
    flags = {flag: False for flag in _KEY_USAGE_FLAGS.values()}
    extended = []

    for use in allowed_uses:
        if use in _KEY_USAGE_FLAGS:
            flags[_KEY_USAGE_FLAGS[use]] = True
        elif use in _EXTENDED_KEY_USAGES:
            extended.append(_EXTENDED_KEY_USAGES[use])
        else:
            raise CertificateError(f"Unknown certificate usage: {use}")

    if any(flags.values()):
        try:
            builder = builder.add_extension(x509.KeyUsage(**flags), critical=True)
        except ValueError as e:
            raise CertificateError(f"Invalid key usage combination: {e}") from e

    if extended:
        builder = builder.add_extension(x509.ExtendedKeyUsage(extended), critical=False)

    return builder


# =============================================================================
# PEM Helpers
# =============================================================================

def private_key_to_pem(private_key) -> str:
    """Serialize a private key as unencrypted PEM (PKCS#1 for RSA, SEC1 for EC)."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def public_key_to_pem(public_key) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


def certificate_to_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode()


def ready_for_renewal(
    cert_pem: str,
    early_renewal_hours: int,
    now: Optional[datetime.datetime] = None
) -> bool:
    """
    Check whether a certificate has entered its early-renewal window.

    Args:
        cert_pem: PEM-encoded certificate
        early_renewal_hours: Hours before expiry at which renewal is due
        now: Reference time (default: current UTC time)

    Returns:
        True if the certificate expires within early_renewal_hours of now
    """
    try:
        cert = x509.load_pem_x509_certificate(cert_pem.encode())
    except ValueError as e:
        raise CertificateError(f"Invalid certificate PEM: {e}") from e

    now = now or datetime.datetime.now(datetime.timezone.utc)
    renew_at = cert.not_valid_after_utc - datetime.timedelta(hours=early_renewal_hours)
    return now >= renew_at


def _utc_now() -> datetime.datetime:
    # Certificate validity has second precision
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


# =============================================================================
# Certificate Authority
# =============================================================================

class CertificateAuthority:
    """Self-signed CA used to sign buildkitd server and client certificates."""

    def __init__(
        self,
        cert: x509.Certificate,
        private_key: rsa.RSAPrivateKey,
        early_renewal_hours: Optional[int] = None
    ):
        self._cert = cert
        self._private_key = private_key
        if early_renewal_hours is None:
            early_renewal_hours = get_settings().ca_early_renewal_hours
        self.early_renewal_hours = early_renewal_hours

    @property
    def cert(self) -> x509.Certificate:
        return self._cert

    @property
    def cert_pem(self) -> str:
        return certificate_to_pem(self._cert)

    @property
    def private_key_pem(self) -> str:
        return private_key_to_pem(self._private_key)

    @property
    def public_key_pem(self) -> str:
        return public_key_to_pem(self._private_key.public_key())

    @classmethod
    def generate(
        cls,
        subject: Optional[CertificateSubject] = None,
        validity_hours: Optional[int] = None,
        early_renewal_hours: Optional[int] = None
    ) -> "CertificateAuthority":
        """
        Generate an RSA 3072 key pair and a self-signed CA certificate.

        Args:
            subject: CA subject (default: CN=buildkit-ca, O=Buildkit development CA)
            validity_hours: Lifetime of the CA certificate (default from settings)
            early_renewal_hours: Renewal window before expiry (default from settings)

        Returns:
            CertificateAuthority
        """
        settings = get_settings()
        if validity_hours is None:
            validity_hours = settings.ca_validity_hours
        subject = subject or default_ca_subject()

        private_key = rsa.generate_private_key(public_exponent=65537, key_size=CA_KEY_BITS)
        public_key = private_key.public_key()
        name = subject.to_name()
        now = _utc_now()

        builder = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(hours=validity_hours))
            .add_extension(
                x509.BasicConstraints(ca=True, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(public_key),
                critical=False,
            )
        )
        builder = _add_usage_extensions(builder, CA_ALLOWED_USES)
        cert = builder.sign(private_key, hashes.SHA256())

        logger.info(
            f"[CERTS] Generated CA certificate {cert.subject.rfc4514_string()} "
            f"(expires {cert.not_valid_after_utc.isoformat()})"
        )
        return cls(cert=cert, private_key=private_key, early_renewal_hours=early_renewal_hours)

    @classmethod
    def load(
        cls,
        cert_pem: str,
        key_pem: str,
        early_renewal_hours: Optional[int] = None
    ) -> "CertificateAuthority":
        """Load an existing CA from PEM-encoded certificate and key."""
        try:
            cert = x509.load_pem_x509_certificate(cert_pem.encode())
            key = serialization.load_pem_private_key(key_pem.encode(), password=None)
        except (ValueError, TypeError) as e:
            raise CertificateError(f"Cannot load CA material: {e}") from e

        if not isinstance(key, rsa.RSAPrivateKey):
            raise CertificateError(f"Expected RSA CA key, got {type(key).__name__}")

        if not _has_extension(cert, x509.BasicConstraints) or \
                not cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca:
            raise CertificateError("Certificate is not a CA certificate")

        if public_key_to_pem(key.public_key()) != public_key_to_pem(cert.public_key()):
            raise CertificateError("CA key does not match certificate")

        return cls(cert=cert, private_key=key, early_renewal_hours=early_renewal_hours)

    def ready_for_renewal(self, now: Optional[datetime.datetime] = None) -> bool:
        return ready_for_renewal(self.cert_pem, self.early_renewal_hours, now=now)

    def issue(
        self,
        cert_request_pem: str,
        allowed_uses: List[str],
        validity_hours: Optional[int] = None
    ) -> str:
        """
        Sign a certificate request with the CA key.

        Subject and subject alternative names are taken from the request.

        Args:
            cert_request_pem: PEM-encoded CSR
            allowed_uses: Usage names, e.g. ["digital_signature", "server_auth"]
            validity_hours: Certificate lifetime (default from settings)

        Returns:
            PEM-encoded certificate
        """
        if validity_hours is None:
            validity_hours = get_settings().cert_validity_hours

        try:
            csr = x509.load_pem_x509_csr(cert_request_pem.encode())
        except ValueError as e:
            raise CertificateError(f"Invalid certificate request: {e}") from e
        if not csr.is_signature_valid:
            raise CertificateError("Certificate request signature is invalid")

        now = _utc_now()
        if _has_extension(self._cert, x509.SubjectKeyIdentifier):
            ca_ski = self._cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value
            aki = x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski)
        else:
            aki = x509.AuthorityKeyIdentifier.from_issuer_public_key(self._cert.public_key())

        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(self._cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(hours=validity_hours))
            .add_extension(
                x509.BasicConstraints(ca=False, path_length=None),
                critical=True,
            )
            .add_extension(aki, critical=False)
        )
        builder = _add_usage_extensions(builder, allowed_uses)

        if _has_extension(csr, x509.SubjectAlternativeName):
            san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
            builder = builder.add_extension(san, critical=False)

        cert = builder.sign(self._private_key, hashes.SHA256())
        return certificate_to_pem(cert)


def _has_extension(obj, extension_type) -> bool:
    try:
        obj.extensions.get_extension_for_class(extension_type)
        return True
    except x509.ExtensionNotFound:
        return False


# =============================================================================
# Peer Certificates
# =============================================================================

def create_certificate_request(
    private_key,
    organization: str = CERT_ORGANIZATION,
    dns_names: Optional[List[str]] = None,
    ip_addresses: Optional[List[str]] = None
) -> str:
    """
    Build a PEM-encoded CSR for a peer key.

    Args:
        private_key: Key the request is signed with
        organization: Subject organization
        dns_names: Optional DNS subject alternative names
        ip_addresses: Optional IP subject alternative names (IPv4 or IPv6)

    Returns:
        PEM-encoded certificate request
    """
    san_entries: List[x509.GeneralName] = []
    for name in dns_names or []:
        try:
            san_entries.append(x509.DNSName(name))
        except (ValueError, TypeError) as e:
            raise CertificateError(f"Invalid DNS name {name!r}: {e}") from e
    for ip in ip_addresses or []:
        try:
            san_entries.append(x509.IPAddress(ipaddress.ip_address(ip)))
        except ValueError as e:
            raise CertificateError(f"Invalid IP address {ip!r}: {e}") from e

    builder = x509.CertificateSigningRequestBuilder().subject_name(
        x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization)])
    )
    if san_entries:
        builder = builder.add_extension(x509.SubjectAlternativeName(san_entries), critical=False)

    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM).decode()


@dataclass
class PeerCertificate:
    """A key, its certificate request, and the CA-signed certificate."""

    private_key_pem: str
    cert_request_pem: str
    cert_pem: str


def issue_peer_certificate(
    ca: CertificateAuthority,
    key_algorithm: KeyAlgorithm,
    allowed_uses: List[str],
    dns_names: Optional[List[str]] = None,
    ip_addresses: Optional[List[str]] = None,
    validity_hours: Optional[int] = None
) -> PeerCertificate:
    """Generate a key, build its CSR, and have the CA sign it."""
    private_key = key_algorithm.generate()
    cert_request_pem = create_certificate_request(
        private_key,
        dns_names=dns_names,
        ip_addresses=ip_addresses,
    )
    cert_pem = ca.issue(cert_request_pem, allowed_uses, validity_hours=validity_hours)

    return PeerCertificate(
        private_key_pem=private_key_to_pem(private_key),
        cert_request_pem=cert_request_pem,
        cert_pem=cert_pem,
    )


# =============================================================================
# BuildKit Certificate Set
# =============================================================================

@dataclass
class BuildkitCertsArgs:
    ca_subject: Optional[CertificateSubject] = None
    # Either "RSA" or "ECDSA", or explicit parameters
    key_algorithm: Union[str, KeyAlgorithm, None] = None
    server_dns_names: List[str] = field(default_factory=list)
    server_ip_addresses: List[str] = field(default_factory=list)


@dataclass
class BuildkitCerts:
    """CA, server and client certificate material for one build farm."""

    name: str
    ca: CertificateAuthority
    server: PeerCertificate
    client: PeerCertificate

    @property
    def ca_cert_pem(self) -> str:
        return self.ca.cert_pem

    @property
    def ca_cert_public_key_pem(self) -> str:
        return self.ca.public_key_pem

    @property
    def server_cert_pem(self) -> str:
        return self.server.cert_pem

    @property
    def server_private_key_pem(self) -> str:
        return self.server.private_key_pem

    @property
    def client_cert_pem(self) -> str:
        return self.client.cert_pem

    @property
    def client_private_key_pem(self) -> str:
        return self.client.private_key_pem


def create_buildkit_certs(
    name: str,
    args: Optional[BuildkitCertsArgs] = None,
    ca: Optional[CertificateAuthority] = None
) -> BuildkitCerts:
    """
    Create a CA plus server and client certificates for buildkitd mutual TLS.

    Args:
        name: Logical name of the certificate set (used in logs)
        args: Subject, key algorithm and server SANs
        ca: Existing CA to sign with; a new one is generated when omitted

    Returns:
        BuildkitCerts
    """
    args = args or BuildkitCertsArgs()

    if isinstance(args.key_algorithm, (RsaKeyAlgorithm, EcdsaKeyAlgorithm)):
        key_algorithm = args.key_algorithm
    else:
        key_algorithm = key_algorithm_from_name(args.key_algorithm)

    if ca is None:
        ca = CertificateAuthority.generate(subject=args.ca_subject)
    else:
        logger.info(f"[CERTS] {name}: reusing CA {ca.cert.subject.rfc4514_string()}")

    server = issue_peer_certificate(
        ca,
        key_algorithm,
        SERVER_ALLOWED_USES,
        dns_names=args.server_dns_names,
        ip_addresses=args.server_ip_addresses,
    )
    logger.info(
        f"[CERTS] {name}: issued {key_algorithm.name} server certificate "
        f"(dns={args.server_dns_names}, ip={args.server_ip_addresses})"
    )

    client = issue_peer_certificate(ca, key_algorithm, CLIENT_ALLOWED_USES)
    logger.info(f"[CERTS] {name}: issued {key_algorithm.name} client certificate")

    return BuildkitCerts(name=name, ca=ca, server=server, client=client)


# =============================================================================
# Persistence
# =============================================================================

def write_certs(certs: BuildkitCerts, directory: Union[str, Path]) -> Path:
    """
    Write certificate material to a directory.

    Private keys are written with 0600 permissions.

    Returns:
        The directory path
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    files = {
        CA_CERT_FILE: (certs.ca_cert_pem, False),
        CA_KEY_FILE: (certs.ca.private_key_pem, True),
        SERVER_CERT_FILE: (certs.server_cert_pem, False),
        SERVER_KEY_FILE: (certs.server_private_key_pem, True),
        CLIENT_CERT_FILE: (certs.client_cert_pem, False),
        CLIENT_KEY_FILE: (certs.client_private_key_pem, True),
    }
    for filename, (content, private) in files.items():
        path = directory / filename
        if private:
            # Restrict an existing file before truncating it
            path.touch(mode=0o600)
            os.chmod(path, 0o600)
        path.write_text(content)

    logger.info(f"[CERTS] Wrote {len(files)} files to {directory}")
    return directory


def load_ca_from_directory(directory: Union[str, Path]) -> Optional[CertificateAuthority]:
    """Load a persisted CA, or return None if the directory holds none."""
    directory = Path(directory)
    cert_path = directory / CA_CERT_FILE
    key_path = directory / CA_KEY_FILE

    if not (cert_path.exists() and key_path.exists()):
        return None

    logger.info(f"[CERTS] Loading CA from {directory}")
    return CertificateAuthority.load(cert_path.read_text(), key_path.read_text())
