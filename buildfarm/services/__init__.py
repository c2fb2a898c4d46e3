"""
Build farm services.

- certificates: CA plus server / client certificates for buildkitd mutual TLS
- builder: Secret, StatefulSet and Service for a buildkitd cluster
- kubernetes: manifest helpers and the API client that applies them

Usage:
    from buildfarm.services import create_buildkit_certs, create_buildkit_builder

    certs = create_buildkit_certs("farm", BuildkitCertsArgs(server_dns_names=["buildkit.example.com"]))
    builder = create_buildkit_builder("farm", BuildkitBuilderArgs(
        ca_cert_pem=certs.ca_cert_pem,
        cert_pem=certs.server_cert_pem,
        private_key_pem=certs.server_private_key_pem,
    ))
    await builder.apply()
"""

from .certificates import (
    BuildkitCerts,
    BuildkitCertsArgs,
    CertificateAuthority,
    CertificateError,
    CertificateSubject,
    EcdsaKeyAlgorithm,
    RsaKeyAlgorithm,
    create_buildkit_certs,
    key_algorithm_from_name,
)
from .builder import (
    BuildkitBuilder,
    BuildkitBuilderArgs,
    DeployedBuildkitBuilder,
    create_buildkit_builder,
    destroy_buildkit_builder,
)
from .kubernetes import PvConfig, ProvisioningError

__all__ = [
    # Certificates
    "BuildkitCerts",
    "BuildkitCertsArgs",
    "CertificateAuthority",
    "CertificateError",
    "CertificateSubject",
    "EcdsaKeyAlgorithm",
    "RsaKeyAlgorithm",
    "create_buildkit_certs",
    "key_algorithm_from_name",
    # Builder
    "BuildkitBuilder",
    "BuildkitBuilderArgs",
    "DeployedBuildkitBuilder",
    "PvConfig",
    "ProvisioningError",
    "create_buildkit_builder",
    "destroy_buildkit_builder",
]
