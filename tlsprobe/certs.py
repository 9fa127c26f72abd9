from __future__ import annotations

import datetime
import ipaddress
from dataclasses import dataclass

import OpenSSL
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509 import ExtendedKeyUsageOID
from cryptography.x509 import NameOID

# Default expiry must not be too long, some clients refuse such certificates.
CA_EXPIRY = datetime.timedelta(days=10 * 365)
CERT_EXPIRY = datetime.timedelta(days=365)


class Cert:
    """Representation of a (TLS) certificate."""

    _cert: x509.Certificate

    def __init__(self, cert: x509.Certificate):
        assert isinstance(cert, x509.Certificate)
        self._cert = cert

    def __eq__(self, other):
        if not isinstance(other, Cert):
            return False
        return self.fingerprint() == other.fingerprint()

    def __repr__(self):
        return f"<Cert(cn={self.cn!r}, altnames={self.altnames!r})>"

    def __hash__(self):
        return self._cert.__hash__()

    @classmethod
    def from_pem(cls, data: bytes) -> Cert:
        cert = x509.load_pem_x509_certificate(data)
        return cls(cert)

    def to_pem(self) -> bytes:
        return self._cert.public_bytes(serialization.Encoding.PEM)

    @classmethod
    def from_pyopenssl(cls, x509: OpenSSL.crypto.X509) -> Cert:
        return cls(x509.to_cryptography())

    def to_pyopenssl(self) -> OpenSSL.crypto.X509:
        return OpenSSL.crypto.X509.from_cryptography(self._cert)

    def to_cryptography(self) -> x509.Certificate:
        return self._cert

    def fingerprint(self) -> bytes:
        return self._cert.fingerprint(hashes.SHA256())

    @property
    def serial(self) -> int:
        return self._cert.serial_number

    @property
    def issuer_cn(self) -> str | None:
        attrs = self._cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
        if attrs:
            return str(attrs[0].value)
        return None

    @property
    def cn(self) -> str | None:
        attrs = self._cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if attrs:
            return str(attrs[0].value)
        return None

    @property
    def altnames(self) -> list[str]:
        """
        Get all SubjectAlternativeName DNS altnames.
        """
        try:
            ext = self._cert.extensions.get_extension_for_class(
                x509.SubjectAlternativeName
            ).value
        except x509.ExtensionNotFound:
            return []
        else:
            return ext.get_values_for_type(x509.DNSName) + [
                str(x) for x in ext.get_values_for_type(x509.IPAddress)
            ]


def create_ca(
    organization: str,
    cn: str,
    key_size: int,
) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
    now = datetime.datetime.now()

    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, cn),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        ]
    )
    builder = x509.CertificateBuilder()
    builder = builder.serial_number(x509.random_serial_number())
    builder = builder.subject_name(name)
    builder = builder.not_valid_before(now - datetime.timedelta(days=2))
    builder = builder.not_valid_after(now + CA_EXPIRY)
    builder = builder.issuer_name(name)
    builder = builder.public_key(private_key.public_key())
    builder = builder.add_extension(
        x509.BasicConstraints(ca=True, path_length=None), critical=True
    )
    builder = builder.add_extension(
        x509.KeyUsage(
            digital_signature=False,
            content_commitment=False,
            key_encipherment=False,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=True,
            crl_sign=True,
            encipher_only=False,
            decipher_only=False,
        ),
        critical=True,
    )
    builder = builder.add_extension(
        x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
        critical=False,
    )
    cert = builder.sign(private_key=private_key, algorithm=hashes.SHA256())
    return private_key, cert


def dummy_cert(
    privkey: rsa.RSAPrivateKey,
    cacert: x509.Certificate,
    commonname: str | None,
    sans: list[str],
    organization: str | None = None,
) -> Cert:
    """
    Generates a leaf certificate signed by the given CA.

    The leaf reuses the CA's key pair, so the CA private key doubles as the
    leaf's private key.

    privkey: CA private key
    cacert: CA certificate
    commonname: Common name for the generated certificate.
    sans: A list of Subject Alternate Names.
    organization: Organization name for the generated certificate.
    """
    builder = x509.CertificateBuilder()
    builder = builder.issuer_name(cacert.subject)
    builder = builder.add_extension(
        x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
    )
    builder = builder.public_key(cacert.public_key())

    now = datetime.datetime.now()
    builder = builder.not_valid_before(now - datetime.timedelta(days=2))
    builder = builder.not_valid_after(now + CERT_EXPIRY)

    subject = []
    is_valid_commonname = commonname is not None and len(commonname) < 64
    if is_valid_commonname:
        assert commonname is not None
        subject.append(x509.NameAttribute(NameOID.COMMON_NAME, commonname))
    if organization is not None:
        subject.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    builder = builder.subject_name(x509.Name(subject))
    builder = builder.serial_number(x509.random_serial_number())

    ss: list[x509.GeneralName] = []
    for x in sans:
        try:
            ip = ipaddress.ip_address(x)
        except ValueError:
            ss.append(x509.DNSName(x))
        else:
            ss.append(x509.IPAddress(ip))
    # RFC 5280 §4.2.1.6: subjectAltName is critical if subject is empty.
    builder = builder.add_extension(
        x509.SubjectAlternativeName(ss), critical=not is_valid_commonname
    )
    cert = builder.sign(private_key=privkey, algorithm=hashes.SHA256())
    return Cert(cert)


@dataclass(frozen=True, eq=False)
class Identity:
    """
    A certificate chain plus private key, i.e. what a server presents during the handshake.
    """

    cert: Cert
    privatekey: rsa.RSAPrivateKey
    chain: tuple[Cert, ...] = ()
    """Extra certificates sent after the leaf, e.g. intermediates."""

    @classmethod
    def generate(
        cls,
        ca_key: rsa.RSAPrivateKey,
        ca_cert: x509.Certificate,
        commonname: str | None,
        sans: list[str] | None = None,
        organization: str | None = None,
    ) -> Identity:
        cert = dummy_cert(ca_key, ca_cert, commonname, sans or [], organization)
        return cls(cert, ca_key)

    def __repr__(self):
        return f"Identity({self.cert!r})"


class IdentityStore:
    """
    Identities keyed by host name, with a default for everything else.
    """

    def __init__(self, default: Identity):
        self.default = default
        self.identities: dict[str, Identity] = {}

    def add(self, identity: Identity, *names: str) -> None:
        """
        Register an identity for the given names. Without explicit names,
        the certificate's common name and DNS altnames are used.
        """
        if not names:
            names = tuple(filter(None, [identity.cert.cn, *identity.cert.altnames]))
        for name in names:
            self.identities[name.lower()] = identity

    @staticmethod
    def asterisk_forms(dn: str) -> list[str]:
        """
        Return all asterisk forms for a domain. For example, for www.example.com this will return
        ["www.example.com", "*.example.com", "*.com"]. The single wildcard "*" is omitted.
        """
        parts = dn.split(".")
        ret = [dn]
        for i in range(1, len(parts)):
            ret.append("*." + ".".join(parts[i:]))
        return ret

    def get(self, hostname: str | None) -> Identity:
        if hostname:
            for name in self.asterisk_forms(hostname.lower()):
                if name in self.identities:
                    return self.identities[name]
        return self.identities.get("*", self.default)

    def __len__(self):
        return len(self.identities)
