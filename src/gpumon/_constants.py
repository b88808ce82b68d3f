"""Shared constants for gpumon."""

# Helm chart for the monitoring stack
PROMETHEUS_REPO_NAME = "prometheus-community"
PROMETHEUS_CHART = "kube-prometheus-stack"
DEFAULT_CHART_REPO_URL = "https://prometheus-community.github.io/helm-charts"
DEFAULT_CHART_VERSION = "39.5.0"
DEFAULT_RELEASE_NAME = "kube-prometheus-stack"
DEFAULT_NAMESPACE = "monitoring"

# Large images (Prometheus, Grafana) can take a while to pull on first install.
HELM_INSTALL_TIMEOUT = "1200s"

# Ingress controller installed ahead of the chart
DEFAULT_INGRESS_NAME = "ingress-nginx"
DEFAULT_WILDCARD_DNS_SUFFIX = "nip.io"

# GPU exporter
GPU_RESOURCE = "nvidia.com/gpu"
GPU_NODE_LABEL_KEY = "hardware-type"
GPU_NODE_LABEL_VALUE = "NVIDIAGPU"
EXPORTER_POD_SELECTOR = "app=dcgm-exporter"
EXPORTER_METRICS_PORT = 9400
DEVICE_PLUGIN_SELECTOR = "app.kubernetes.io/instance=nvidia-device-plugin"
DEFAULT_DEVICE_PLUGIN_NAMESPACE = "kube-system"
DEFAULT_GPU_OPERATOR_NAMESPACE = "gpu-operator"

# Upstream registries rewritten when a private mirror is configured
UPSTREAM_IMAGE_REGISTRIES = ("quay.io", "nvcr.io")

# ConfigMaps
DCGM_METRICS_CONFIGMAP = "dcgm-custom-metrics"
DASHBOARD_CONFIGMAP = "kube-prometheus-grafana-gpu"
DASHBOARD_DISCOVERY_LABEL = {"grafana_dashboard": "1"}

# Grafana admin credentials live in the release-managed secret
GRAFANA_SECRET_USER_KEY = "admin-user"
GRAFANA_SECRET_PASSWORD_KEY = "admin-password"

CONTROL_PLANE_LABELS = (
    "node-role.kubernetes.io/control-plane",
    "node-role.kubernetes.io/master",
)

# CRDs installed by the Prometheus operator and removed on delete
PROMETHEUS_OPERATOR_CRDS = (
    "prometheuses.monitoring.coreos.com",
    "prometheusrules.monitoring.coreos.com",
    "servicemonitors.monitoring.coreos.com",
    "podmonitors.monitoring.coreos.com",
    "alertmanagers.monitoring.coreos.com",
    "thanosrulers.monitoring.coreos.com",
)

# Releases left behind by older installs: (release, namespace or None for helm's default)
LEGACY_RELEASES = (
    ("prometheus-operator", None),
    ("nginx-ingress", None),
    ("ingress-nginx", "deepops-ingress"),
)
