"""Per-endpoint checks and options, and ordering of NIC rails."""

from __future__ import annotations

import logging
import os
import re
import threading
from collections.abc import Callable, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from .platform import PlatformData, PlatformError

log = logging.getLogger(__name__)

T = TypeVar("T")

SENDRECV_INORDER_OPTION = "FI_OPT_EFA_SENDRECV_IN_ORDER_ALIGNED_128_BYTES"
"""Endpoint option asking for 128-byte in-order delivery of sends."""

WRITE_INORDER_OPTION = "FI_OPT_EFA_WRITE_IN_ORDER_ALIGNED_128_BYTES"
"""Endpoint option asking for 128-byte in-order delivery of RDMA writes."""

GUID_LENGTH = 19
"""Length of a node GUID in ``XXXX:XXXX:XXXX:XXXX`` form."""

NUM_VFS = 2
"""Number of virtual functions a rail index may come from."""

_STRTOL_DECIMAL = re.compile(r"\s*[+-]?\d+")


def check_gdr(platform: PlatformData | None, gdr_supported: bool, disable_check: bool) -> None:
    """Raise PlatformError when a GDR-requiring platform runs without GDR."""
    if disable_check or platform is None:
        return
    if platform.gdr_required and not gdr_supported:
        raise PlatformError(f"GDR disabled on GDR-supported instance type {platform.name}")


def _configure_nccl_proto(environ: MutableMapping[str, str]) -> None:
    proto = environ.get("NCCL_PROTO")
    if proto is None:
        log.info('Setting NCCL_PROTO to "simple"')
        environ["NCCL_PROTO"] = "simple"
    elif proto.lower() != "simple":
        log.warning(
            'NCCL_PROTO was set to "LL/LL128", but the endpoint does not support '
            "128 byte in-order aligned stores. This endpoint may corrupt data "
            "during communication"
        )


@dataclass
class EndpointConfigurator:
    """Applies platform requirements to each endpoint that is opened.

    ``emulated_write`` is the value endpoints report for the emulated-write
    option, or None when that option cannot be queried. ``set_max_msg_size``
    sets the maximum message size on an endpoint and returns False when the
    option is not supported; None means the option is not available at all.
    """

    selected_protocol: str | None
    platform: PlatformData | None = None
    gdr_supported: bool = False
    disable_gdr_required_check: bool = False
    disable_native_rdma_check: bool = False
    emulated_write: bool | None = False
    have_cuda: bool = True
    max_msg_size: int = 0
    set_max_msg_size: Callable[[int], bool] | None = None
    need_ordering: bool = False
    proto_configured: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def _protocol_is(self, name: str) -> bool:
        return self.selected_protocol is not None and self.selected_protocol.lower() == name.lower()

    def _validate_rdma_write(self) -> None:
        if self.emulated_write is None:
            raise PlatformError(
                "FI_OPT_EFA_EMULATED_WRITE not available when the communication "
                "protocol is RDMA write."
            )
        if self.emulated_write:
            raise PlatformError(
                "FI_OPT_EFA_EMULATED_WRITE is true when the communication protocol is RDMA write."
            )
        log.debug("Endpoint option FI_OPT_EFA_EMULATED_WRITE: %s", self.emulated_write)

    def _configure_max_msg_size(self) -> None:
        if self.set_max_msg_size is None:
            return
        if not self.set_max_msg_size(self.max_msg_size):
            log.info("Setting FI_OPT_MAX_MSG_SIZE not supported.")

    def configure(
        self,
        provider_name: str,
        set_inorder: Callable[[str], bool],
        environ: MutableMapping[str, str] | None = None,
    ) -> bool:
        """Configure one endpoint of the given provider.

        ``set_inorder`` tries to enable the named in-order option on the
        endpoint and returns whether that worked; it raises on unexpected
        failures. Returns whether endpoints are required to keep in-order
        delivery. Raises PlatformError when the endpoint cannot be used.
        """
        if environ is None:
            environ = os.environ

        if provider_name != "efa":
            return self.need_ordering

        check_gdr(self.platform, self.gdr_supported, self.disable_gdr_required_check)

        if self._protocol_is("RDMA") and not self.disable_native_rdma_check:
            self._validate_rdma_write()

        if not self.have_cuda:
            return self.need_ordering

        if self._protocol_is("SENDRECV"):
            option = SENDRECV_INORDER_OPTION
        elif self._protocol_is("RDMA"):
            option = WRITE_INORDER_OPTION
        else:
            raise PlatformError(f"unknown transport {self.selected_protocol}")

        with self._lock:
            if self.need_ordering or not self.proto_configured:
                have_ordering = bool(set_inorder(option))
                log.debug("Setting %s ordering result %s", option, have_ordering)

                if self.need_ordering and not have_ordering:
                    raise PlatformError(
                        f"Setting {option} option failed after succeeding during initialization"
                    )

                if not self.proto_configured:
                    self.need_ordering = have_ordering
                    self.proto_configured = True
                    if not have_ordering:
                        _configure_nccl_proto(environ)

            if self._protocol_is("RDMA"):
                self._configure_max_msg_size()

            return self.need_ordering


def parse_vf_index(guid: str) -> int:
    """Return the virtual-function index held in the last two digits of a GUID.

    Raises ValueError when the GUID is not in ``XXXX:XXXX:XXXX:XXXX`` form.
    """
    if len(guid) != GUID_LENGTH:
        raise ValueError(f"Bad GUID format: wrong size: {guid!r}")
    if guid[14] != ":":
        raise ValueError(f"Bad GUID format: wrong colon pos: {guid!r}")
    tail = guid[17:19]
    if not _STRTOL_DECIMAL.fullmatch(tail):
        raise ValueError(f"Can't locate vf_idx in GUID {guid!r}")
    return int(tail)


def read_rail_vf_index(device_name: str, sysfs_root: str | os.PathLike[str] = "/sys") -> int:
    """Read the node GUID of an InfiniBand device and return its VF index.

    Raises OSError when the file cannot be read and ValueError on a bad GUID.
    """
    path = Path(sysfs_root) / "class" / "infiniband" / device_name / "node_guid"
    with open(path, encoding="ascii", errors="replace") as handle:
        line = handle.readline()
    if not line:
        raise OSError(f"Error reading file: {path}")
    return parse_vf_index(line[:GUID_LENGTH])


def sort_rails(infos: Sequence[T], num_rails: int, vf_index: Callable[[T], int]) -> list[T]:
    """Order rails so that rails of VF 0 come first, then those of VF 1.

    Only the first ``num_rails`` entries are kept. When the order cannot be
    determined, the input is returned unchanged.
    """
    original = list(infos)
    if num_rails <= 0:
        return original
    if len(original) < num_rails:
        log.warning("Fewer NICs than rails")
        return original

    slots: list[T | None] = [None] * num_rails
    rail_map = [0, 2]
    for position, info in enumerate(original[:num_rails]):
        try:
            vf = vf_index(info)
        except (OSError, ValueError) as exc:
            log.warning("Unable to determine vf_idx: %s", exc)
            return original
        if not 0 <= vf < NUM_VFS:
            log.warning("Invalid vf_idx value %d", vf)
            return original

        rail = rail_map[vf]
        rail_map[vf] += 1
        log.debug("Assigning rail index %d to info list idx %d", rail, position)

        if rail >= num_rails:
            log.warning("Rail index %d out of range", rail)
            return original
        if slots[rail] is not None:
            log.warning("Attempted to fill rail slot with duplicate infos")
            return original
        slots[rail] = info

    return [info for info in slots if info is not None]