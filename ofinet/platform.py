"""Per-instance-type defaults and environment setup for EC2 platforms."""

from __future__ import annotations

import logging
import os
from collections.abc import MutableMapping
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

PRODUCT_NAME_PATH = Path("/sys/devices/virtual/dmi/id/product_name")
"""File whose first line names the EC2 instance type."""

DEFAULT_XML_DIR = "/usr/share/ofinet/xml"
"""Directory holding the pre-configured topology files."""

PATH_MAX = 4096
"""Longest topology file path accepted, terminator included."""

DEFAULT_LATENCY = 150.0
"""Internode latency in microseconds used when the platform gives none."""

NVLS_FIXED_VERSION = 21805
"""First collective library version (2.18.5) without the NVLS bug."""

CHUNK_SIZE = "524288"
"""NVLS and NVLS tree chunk size (512 KiB)."""


class PlatformError(Exception):
    """Raised when the platform cannot be configured."""


@dataclass(frozen=True)
class PlatformData:
    """Defaults that apply to one EC2 instance type."""

    name: str
    topology: str | None
    default_dup_conns: int
    latency: float
    gdr_required: bool
    net_flush_required: bool
    default_protocol: str
    domain_per_thread: int


PLATFORMS: tuple[PlatformData, ...] = (
    PlatformData("p4d.24xlarge", "p4d-24xl-topo.xml", 0, 75.0, True, True, "SENDRECV", 0),
    PlatformData("p4de.24xlarge", "p4de-24xl-topo.xml", 0, 75.0, True, True, "SENDRECV", 0),
    PlatformData("p3dn.24xlarge", None, 4, 150.0, False, True, "SENDRECV", 0),
    PlatformData("p5.48xlarge", None, 0, 75.0, True, False, "RDMA", 0),
    PlatformData("p5e.48xlarge", None, 0, 75.0, True, False, "RDMA", 0),
    PlatformData("g5.48xlarge", "g5.48xl-topo.xml", 0, 75.0, False, True, "SENDRECV", 0),
    PlatformData("trn1.32xlarge", None, 0, 75.0, True, True, "SENDRECV", 1),
    PlatformData("trn1n.32xlarge", None, 0, 75.0, True, True, "SENDRECV", 1),
    PlatformData("trn2n.48xlarge", None, 0, 75.0, True, True, "RDMA", 1),
)


@dataclass(frozen=True)
class PluginSettings:
    """User parameters and build facts that platform setup depends on.

    ``net_latency`` and ``domain_per_thread`` take negative values to mean
    "not set by the user"; ``protocol`` is None when no protocol was chosen.
    ``nccl_version`` is None when the collective library version is unknown.
    """

    nic_dup_conns: int = 0
    net_latency: float = -1.0
    protocol: str | None = None
    domain_per_thread: int = -1
    have_cuda: bool = True
    fi_version: tuple[int, int] = (1, 13)
    nccl_version: int | None = None
    xml_dir: str = DEFAULT_XML_DIR


@dataclass(frozen=True)
class PlatformConfig:
    """Settings resolved for the platform the process runs on."""

    platform: PlatformData | None
    provider_filter: str | None
    nic_dup_conns: int
    net_latency: float
    selected_protocol: str | None
    domain_per_thread: int


def read_platform_type(path: str | os.PathLike[str] = PRODUCT_NAME_PATH) -> str | None:
    """Return the first line of the product name file, or None if unreadable."""
    try:
        with open(path, encoding="utf-8", errors="replace") as handle:
            line = handle.readline()
    except OSError as exc:
        log.warning("Error reading file: %s (%s)", path, exc)
        return None
    platform_type = line.rstrip("\n")
    log.debug("EC2 platform type is %s", platform_type)
    return platform_type


def lookup_platform(platform_type: str | None) -> PlatformData | None:
    """Return the defaults for an instance type, or None when it is unknown."""
    if platform_type is None:
        return None
    found = None
    for data in PLATFORMS:
        if data.name == platform_type:
            found = data
    return found


def _fork_safe_variable(fi_version: tuple[int, int]) -> str:
    major, minor = fi_version
    if major > 1 or (major == 1 and minor >= 13):
        return "FI_EFA_FORK_SAFE"
    return "RDMAV_FORK_SAFE"


def _configure_cuda(
    platform: PlatformData | None,
    environ: MutableMapping[str, str],
    settings: PluginSettings,
) -> None:
    fork_safe = _fork_safe_variable(settings.fi_version)
    if fork_safe not in environ:
        log.info("Setting %s environment variable to 1", fork_safe)
        environ[fork_safe] = "1"

    if "NCCL_NVLS_ENABLE" not in environ:
        version = settings.nccl_version
        if version is None:
            log.debug("Collective library version unknown; skipping NVLS version check")
        elif version < NVLS_FIXED_VERSION:
            log.info("Disabling NVLS support due to NCCL version %d", version)
            environ["NCCL_NVLS_ENABLE"] = "0"
        else:
            log.debug("Not disabling NVLS support due to NCCL version %d", version)

    if platform is not None and not platform.net_flush_required and (
        "NCCL_NET_FORCE_FLUSH" not in environ
    ):
        log.info("Setting NCCL_NET_FORCE_FLUSH=0 for Hopper GPUs")
        environ.setdefault("NCCL_NET_FORCE_FLUSH", "0")

    log.info("Setting NCCL_NVLSTREE_MAX_CHUNKSIZE to 512KiB")
    environ.setdefault("NCCL_NVLSTREE_MAX_CHUNKSIZE", CHUNK_SIZE)
    log.info("Setting NCCL_NVLS_CHUNKSIZE to 512KiB")
    environ.setdefault("NCCL_NVLS_CHUNKSIZE", CHUNK_SIZE)


def configure_platform(
    platform_type: str | None,
    environ: MutableMapping[str, str] | None = None,
    settings: PluginSettings | None = None,
) -> PlatformConfig:
    """Apply platform defaults to the environment and resolve plugin settings.

    The environment is changed in place. Raises PlatformError when the
    topology file path would be too long.
    """
    if environ is None:
        environ = os.environ
    if settings is None:
        settings = PluginSettings()

    log.info("Configuring AWS-specific options")
    platform = lookup_platform(platform_type)

    provider_filter = None
    select_efa = False
    fi_provider = environ.get("FI_PROVIDER")
    if fi_provider is None:
        log.info("Setting provider_filter to efa")
        provider_filter = "efa"
        select_efa = True
    elif fi_provider == "efa":
        select_efa = True

    if settings.have_cuda:
        _configure_cuda(platform, environ, settings)

    if "NCCL_TOPO_FILE" in environ:
        log.info(
            "Running on %s platform, NCCL_TOPO_FILE environment variable is already set to %s",
            platform_type, environ["NCCL_TOPO_FILE"],
        )
    elif platform is not None and platform.topology:
        topology_path = f"{settings.xml_dir}/{platform.topology}"
        if len(topology_path) >= PATH_MAX:
            raise PlatformError(
                f"Topology XML file path is too long ({len(topology_path)} characters, "
                f"limit {PATH_MAX - 1})"
            )
        log.info(
            "Running on %s platform, Setting NCCL_TOPO_FILE environment variable to %s",
            platform_type, topology_path,
        )
        environ["NCCL_TOPO_FILE"] = topology_path

    nic_dup_conns = settings.nic_dup_conns
    if nic_dup_conns == 0 and platform is not None:
        nic_dup_conns = platform.default_dup_conns

    net_latency = settings.net_latency
    if net_latency < 0:
        if platform is not None and platform.latency >= 0.0:
            net_latency = platform.latency
        else:
            net_latency = DEFAULT_LATENCY
        log.info("Internode latency set at %.1f us", net_latency)

    selected_protocol = settings.protocol
    if select_efa and settings.protocol is None and platform is not None:
        selected_protocol = platform.default_protocol

    domain_per_thread = settings.domain_per_thread
    if domain_per_thread == -1:
        domain_per_thread = platform.domain_per_thread if platform is not None else 0
    log.info("Creating one domain per %s", "thread" if domain_per_thread else "process")

    return PlatformConfig(
        platform=platform,
        provider_filter=provider_filter,
        nic_dup_conns=nic_dup_conns,
        net_latency=net_latency,
        selected_protocol=selected_protocol,
        domain_per_thread=domain_per_thread,
    )