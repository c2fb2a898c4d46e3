#!/usr/bin/env python3
"""
Build farm command line.

Usage:
    buildfarm certs --out ./certs --dns-name buildkit.example.com
    buildfarm render farm --certs ./certs --replicas 3
    buildfarm deploy farm --certs ./certs --storage-class fast --storage-size 10Gi --wait 300
    buildfarm destroy farm --namespace build

Clients connect with the generated client certificate, e.g.:
    docker buildx create --driver remote \\
        --driver-opt cacert=certs/ca.pem,cert=certs/client-cert.pem,key=certs/client-key.pem \\
        tcp://buildkit.example.com:1234
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from .config import get_settings
from .services.builder import BuildkitBuilderArgs, create_buildkit_builder, destroy_buildkit_builder
from .services.certificates import (
    CA_CERT_FILE,
    CertificateError,
    CertificateSubject,
    BuildkitCertsArgs,
    SERVER_CERT_FILE,
    SERVER_KEY_FILE,
    create_buildkit_certs,
    load_ca_from_directory,
    write_certs,
)
from .services.kubernetes.client import ProvisioningError
from .services.kubernetes.helpers import PvConfig

logger = logging.getLogger(__name__)


def _key_value(value: str) -> tuple:
    key, sep, val = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {value!r}")
    return key, val


def _to_dict(pairs: Optional[List[tuple]]) -> Dict[str, str]:
    return dict(pairs or [])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="buildfarm",
        description="Provision a mutual-TLS BuildKit build farm on Kubernetes",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    # certs
    certs = subparsers.add_parser("certs", help="Generate CA, server and client certificates")
    certs.add_argument("--out", required=True, type=Path, help="Directory to write PEM files to")
    certs.add_argument("--name", default="buildkit", help="Name of the certificate set")
    certs.add_argument("--key-algorithm", choices=["RSA", "ECDSA"], default="RSA")
    certs.add_argument("--dns-name", action="append", default=[], help="Server DNS name (repeatable)")
    certs.add_argument("--ip-address", action="append", default=[], help="Server IP address (repeatable)")
    certs.add_argument("--ca-common-name", help="CA subject common name")
    certs.add_argument("--ca-organization", help="CA subject organization")
    certs.add_argument(
        "--new-ca",
        action="store_true",
        help="Generate a new CA even if one exists in --out",
    )

    # render / deploy share builder options
    builder_options = argparse.ArgumentParser(add_help=False)
    builder_options.add_argument("name", help="Builder name")
    builder_options.add_argument("--certs", required=True, type=Path, help="Directory with PEM files")
    builder_options.add_argument("--namespace", help="Kubernetes namespace")
    builder_options.add_argument("--replicas", type=int, default=1)
    builder_options.add_argument("--storage-class", help="StorageClass for per-replica cache volumes")
    builder_options.add_argument("--storage-size", help="Size of per-replica cache volumes (e.g. 10Gi)")
    builder_options.add_argument("--hostname", help="External DNS hostname for the Service")
    builder_options.add_argument("--service-type", help="Service type (default: LoadBalancer)")
    builder_options.add_argument(
        "--annotation", action="append", type=_key_value, help="Service annotation KEY=VALUE (repeatable)"
    )
    builder_options.add_argument(
        "--node-selector", action="append", type=_key_value, help="Node selector KEY=VALUE (repeatable)"
    )

    subparsers.add_parser("render", parents=[builder_options], help="Print manifests as YAML")

    deploy = subparsers.add_parser("deploy", parents=[builder_options], help="Apply to the cluster")
    deploy.add_argument("--wait", type=int, default=0, help="Seconds to wait for all replicas to be ready")

    destroy = subparsers.add_parser("destroy", help="Delete a build farm from the cluster")
    destroy.add_argument("name", help="Builder name")
    destroy.add_argument("--namespace", help="Kubernetes namespace")

    return parser


def generate_certs(args: argparse.Namespace) -> None:
    """Generate certificates, reusing a persisted CA unless it is due for renewal."""
    ca = None if args.new_ca else load_ca_from_directory(args.out)
    if ca is not None and ca.ready_for_renewal():
        print(f"ℹ️  CA in {args.out} is within its renewal window, generating a new one")
        ca = None

    if ca is not None and (args.ca_common_name or args.ca_organization):
        print(
            f"⚠️  Reusing the CA in {args.out}; --ca-common-name/--ca-organization "
            f"are ignored (pass --new-ca to apply them)",
            file=sys.stderr,
        )

    ca_subject = None
    if args.ca_common_name or args.ca_organization:
        ca_subject = CertificateSubject(
            common_name=args.ca_common_name,
            organization=args.ca_organization,
        )

    certs = create_buildkit_certs(
        args.name,
        BuildkitCertsArgs(
            ca_subject=ca_subject,
            key_algorithm=args.key_algorithm,
            server_dns_names=args.dns_name,
            server_ip_addresses=args.ip_address,
        ),
        ca=ca,
    )
    write_certs(certs, args.out)
    print(f"✅ Certificates written to {args.out}")


def builder_from_args(args: argparse.Namespace):
    """Load server certificate material and build the desired state."""
    if bool(args.storage_class) != bool(args.storage_size):
        raise ValueError("--storage-class and --storage-size must be given together")

    pv_config = None
    if args.storage_class:
        pv_config = PvConfig(storage_class=args.storage_class, size=args.storage_size)

    try:
        ca_cert_pem = (args.certs / CA_CERT_FILE).read_text()
        cert_pem = (args.certs / SERVER_CERT_FILE).read_text()
        private_key_pem = (args.certs / SERVER_KEY_FILE).read_text()
    except FileNotFoundError as e:
        raise ValueError(f"Missing certificate file: {e.filename}") from e

    return create_buildkit_builder(
        args.name,
        BuildkitBuilderArgs(
            ca_cert_pem=ca_cert_pem,
            cert_pem=cert_pem,
            private_key_pem=private_key_pem,
            replicas=args.replicas,
            namespace=args.namespace,
            pv_config=pv_config,
            node_selector=_to_dict(args.node_selector) or None,
            hostname=args.hostname,
            service_type=args.service_type,
            service_annotations=_to_dict(args.annotation),
        ),
    )


async def deploy(args: argparse.Namespace) -> None:
    from .services.kubernetes.client import get_k8s_client

    builder = builder_from_args(args)
    k8s = get_k8s_client()
    deployed = await builder.apply(k8s)

    if args.wait:
        await k8s.wait_for_stateful_set_ready(
            deployed.stateful_set.metadata.name,
            builder.namespace,
            timeout=args.wait,
        )

    print(f"✅ Build farm '{args.name}' applied in namespace '{builder.namespace}'")
    print(f"  StatefulSet: {deployed.stateful_set.metadata.name}")
    print(f"  Service:     {deployed.service.metadata.name}")


async def destroy(args: argparse.Namespace) -> None:
    namespace = args.namespace or get_settings().default_namespace
    await destroy_buildkit_builder(args.name, namespace)
    print(f"✅ Build farm '{args.name}' deleted from namespace '{namespace}'")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    level = logging.DEBUG if args.verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        if args.command == "certs":
            generate_certs(args)
        elif args.command == "render":
            print(builder_from_args(args).render_yaml(), end="")
        elif args.command == "deploy":
            asyncio.run(deploy(args))
        elif args.command == "destroy":
            asyncio.run(destroy(args))
        else:
            parser.print_help()
            return 1
    except (CertificateError, ProvisioningError, ValueError) as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
