"""docker-buildfarm: a mutual-TLS BuildKit build farm on Kubernetes."""

__version__ = "0.1.0"
