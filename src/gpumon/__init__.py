"""gpumon: GPU-aware monitoring stack deployment for Kubernetes."""

__version__ = "0.3.0"
