#!/usr/bin/env python3
# src/kind_config.py
"""
Desired Cluster spec and its projection into a KIND v1alpha4 configuration.

The projection is a pure function: it performs no I/O and the same spec always
renders to the same YAML document.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

KIND_API_VERSION = "kind.x-k8s.io/v1alpha4"
KIND_CONFIG_KIND = "Cluster"

ROLE_CONTROL_PLANE = "control-plane"
ROLE_WORKER = "worker"

NODE_ROLES = (ROLE_CONTROL_PLANE, ROLE_WORKER)
PROXY_MODES = ("iptables", "ipvs", "nftables", "none")
IP_FAMILIES = ("ipv4", "ipv6", "dual")
PROTOCOLS = ("TCP", "UDP", "SCTP")
PROPAGATIONS = ("None", "HostToContainer", "Bidirectional")


class SpecError(ValueError):
    """Raised when spec.forProvider cannot be parsed."""


# -----------------------------
# Desired spec
# -----------------------------


@dataclass(frozen=True)
class Mount:
    host_path: str
    container_path: str
    readonly: Optional[bool] = None
    selinux_relabel: Optional[bool] = None
    propagation: Optional[str] = None


@dataclass(frozen=True)
class PortMapping:
    container_port: int
    host_port: int
    listen_address: Optional[str] = None
    protocol: Optional[str] = None


@dataclass(frozen=True)
class NodeSpec:
    role: Optional[str] = None
    image: Optional[str] = None
    extra_mounts: List[Mount] = field(default_factory=list)
    extra_port_mappings: List[PortMapping] = field(default_factory=list)
    kubeadm_config_patches: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NetworkingSpec:
    ip_family: Optional[str] = None
    api_server_address: Optional[str] = None
    api_server_port: Optional[int] = None
    pod_subnet: Optional[str] = None
    service_subnet: Optional[str] = None
    disable_default_cni: Optional[bool] = None
    kube_proxy_mode: Optional[str] = None


@dataclass(frozen=True)
class DesiredClusterSpec:
    nodes: List[NodeSpec] = field(default_factory=list)
    networking: Optional[NetworkingSpec] = None
    feature_gates: Dict[str, bool] = field(default_factory=dict)
    runtime_config: Dict[str, str] = field(default_factory=dict)
    kube_proxy_mode: Optional[str] = None
    containerd_config_patches: List[str] = field(default_factory=list)
    wait_for_ready: Optional[str] = None

    @classmethod
    def from_dict(cls, params: Optional[Dict[str, Any]]) -> "DesiredClusterSpec":
        """Parse spec.forProvider of a Cluster custom object."""
        params = _mapping(params, "forProvider")
        networking = params.get("networking")
        return cls(
            nodes=[
                _parse_node(_mapping(n, "nodes[]"))
                for n in _sequence(params.get("nodes"), "nodes")
            ],
            networking=(
                _parse_networking(_mapping(networking, "networking"))
                if networking is not None
                else None
            ),
            feature_gates=_typed_map(params.get("featureGates"), bool, "featureGates"),
            runtime_config=_typed_map(params.get("runtimeConfig"), str, "runtimeConfig"),
            kube_proxy_mode=_enum(params.get("kubeProxyMode"), PROXY_MODES, "kubeProxyMode"),
            containerd_config_patches=_strings(
                params.get("containerdConfigPatches"), "containerdConfigPatches"
            ),
            wait_for_ready=params.get("waitForReady"),
        )


def _mapping(value: Any, name: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SpecError(f"{name} must be an object, got {type(value).__name__}")
    return value


def _sequence(value: Any, name: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise SpecError(f"{name} must be a list, got {type(value).__name__}")
    return value


def _strings(value: Any, name: str) -> List[str]:
    items = _sequence(value, name)
    for item in items:
        if not isinstance(item, str):
            raise SpecError(f"{name} entries must be strings, got {type(item).__name__}")
    return list(items)


def _typed_map(value: Any, value_type: type, name: str) -> Dict[str, Any]:
    """Copy a string-keyed map, rejecting values that are not of value_type."""
    out = {}
    for k, v in _mapping(value, name).items():
        if not isinstance(k, str) or not isinstance(v, value_type):
            raise SpecError(
                f"{name} must map strings to {value_type.__name__}, got {k!r}: {v!r}"
            )
        out[k] = v
    return out


def _enum(value: Optional[str], allowed, name: str) -> Optional[str]:
    if value is None:
        return None
    if value not in allowed:
        raise SpecError(f"{name} must be one of {', '.join(allowed)}, got {value!r}")
    return value


def _parse_node(raw: Dict[str, Any]) -> NodeSpec:
    return NodeSpec(
        role=_enum(raw.get("role"), NODE_ROLES, "role"),
        image=raw.get("image"),
        extra_mounts=[
            Mount(
                host_path=m.get("hostPath", ""),
                container_path=m.get("containerPath", ""),
                readonly=m.get("readonly"),
                selinux_relabel=m.get("selinuxRelabel"),
                propagation=_enum(m.get("propagation"), PROPAGATIONS, "propagation"),
            )
            for m in (
                _mapping(m, "extraMounts[]")
                for m in _sequence(raw.get("extraMounts"), "extraMounts")
            )
        ],
        extra_port_mappings=[
            PortMapping(
                container_port=int(p.get("containerPort", 0)),
                host_port=int(p.get("hostPort", 0)),
                listen_address=p.get("listenAddress"),
                protocol=_enum(p.get("protocol"), PROTOCOLS, "protocol"),
            )
            for p in (
                _mapping(p, "extraPortMappings[]")
                for p in _sequence(raw.get("extraPortMappings"), "extraPortMappings")
            )
        ],
        kubeadm_config_patches=_strings(
            raw.get("kubeadmConfigPatches"), "kubeadmConfigPatches"
        ),
        labels=_typed_map(raw.get("labels"), str, "labels"),
    )


def _parse_networking(raw: Dict[str, Any]) -> NetworkingSpec:
    port = raw.get("apiServerPort")
    return NetworkingSpec(
        ip_family=_enum(raw.get("ipFamily"), IP_FAMILIES, "ipFamily"),
        api_server_address=raw.get("apiServerAddress"),
        api_server_port=int(port) if port is not None else None,
        pod_subnet=raw.get("podSubnet"),
        service_subnet=raw.get("serviceSubnet"),
        disable_default_cni=raw.get("disableDefaultCNI"),
        kube_proxy_mode=_enum(raw.get("kubeProxyMode"), PROXY_MODES, "kubeProxyMode"),
    )


# -----------------------------
# Durations
# -----------------------------

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(value: str) -> float:
    """Parse a Go duration string ("30s", "1h30m", "1.5h") into seconds."""
    if not isinstance(value, str) or not value:
        raise ValueError(f"invalid duration {value!r}")

    text = value
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0
    if not text:
        raise ValueError(f"invalid duration {value!r}")

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def format_duration(seconds: float) -> str:
    """Format seconds as a duration string the kind CLI accepts."""
    return f"{int(round(seconds * 1000))}ms"


# -----------------------------
# Projection
# -----------------------------


def _project_mount(m: Mount) -> Dict[str, Any]:
    out: Dict[str, Any] = {"hostPath": m.host_path, "containerPath": m.container_path}
    if m.readonly is not None:
        out["readOnly"] = m.readonly
    if m.selinux_relabel is not None:
        out["selinuxRelabel"] = m.selinux_relabel
    if m.propagation is not None:
        out["propagation"] = m.propagation
    return out


def _project_port_mapping(p: PortMapping) -> Dict[str, Any]:
    out: Dict[str, Any] = {"containerPort": p.container_port, "hostPort": p.host_port}
    if p.listen_address is not None:
        out["listenAddress"] = p.listen_address
    if p.protocol is not None:
        out["protocol"] = p.protocol
    return out


def _project_node(node: NodeSpec) -> Dict[str, Any]:
    out: Dict[str, Any] = {"role": node.role or ROLE_CONTROL_PLANE}
    if node.image is not None:
        out["image"] = node.image
    if node.extra_mounts:
        out["extraMounts"] = [_project_mount(m) for m in node.extra_mounts]
    if node.extra_port_mappings:
        out["extraPortMappings"] = [
            _project_port_mapping(p) for p in node.extra_port_mappings
        ]
    if node.kubeadm_config_patches:
        out["kubeadmConfigPatches"] = list(node.kubeadm_config_patches)
    if node.labels:
        out["labels"] = dict(sorted(node.labels.items()))
    return out


def _project_networking(spec: DesiredClusterSpec) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    net = spec.networking
    if net is not None:
        if net.ip_family is not None:
            out["ipFamily"] = net.ip_family
        if net.api_server_address is not None:
            out["apiServerAddress"] = net.api_server_address
        if net.api_server_port is not None:
            out["apiServerPort"] = net.api_server_port
        if net.pod_subnet is not None:
            out["podSubnet"] = net.pod_subnet
        if net.service_subnet is not None:
            out["serviceSubnet"] = net.service_subnet
        if net.disable_default_cni is not None:
            out["disableDefaultCNI"] = net.disable_default_cni
        if net.kube_proxy_mode is not None:
            out["kubeProxyMode"] = net.kube_proxy_mode

    # Networking-level proxy mode wins over the top-level one.
    if spec.kube_proxy_mode is not None and "kubeProxyMode" not in out:
        out["kubeProxyMode"] = spec.kube_proxy_mode
    return out


def project(spec: DesiredClusterSpec) -> Dict[str, Any]:
    """Build the KIND v1alpha4 Cluster configuration for a desired spec."""
    cfg: Dict[str, Any] = {"kind": KIND_CONFIG_KIND, "apiVersion": KIND_API_VERSION}

    if spec.nodes:
        cfg["nodes"] = [_project_node(n) for n in spec.nodes]
    else:
        cfg["nodes"] = [{"role": ROLE_CONTROL_PLANE}]

    networking = _project_networking(spec)
    if networking:
        cfg["networking"] = networking

    if spec.feature_gates:
        cfg["featureGates"] = dict(sorted(spec.feature_gates.items()))
    if spec.runtime_config:
        cfg["runtimeConfig"] = dict(sorted(spec.runtime_config.items()))

    # Order matters: KIND applies the last matching patch.
    if spec.containerd_config_patches:
        cfg["containerdConfigPatches"] = list(spec.containerd_config_patches)

    return cfg


def render(cfg: Dict[str, Any]) -> str:
    """Serialize a projected configuration to the YAML the kind CLI reads."""
    return yaml.safe_dump(cfg, sort_keys=False, default_flow_style=False)
