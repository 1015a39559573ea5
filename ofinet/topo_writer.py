"""Writing a decorated hardware topology as a collective-library topology file."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import TextIO

from .topo import ObjType, PciAddress, TopologyError, TopoNode, Topology

log = logging.getLogger(__name__)

MAX_DEV_PROPERTY_LENGTH = 16
"""Most characters read from a device property file."""

SPEED_NAME = "max_link_speed"
WIDTH_NAME = "max_link_width"

PCIE_GEN = ("2.5", "5", "8", "16", "32", "64")
"""Lane speed in GT/s of each PCIe generation, first generation first."""

INDENT_OFFSET = 2

_OVERRIDE_SPEED = "Unknown"
_OVERRIDE_WIDTH = "255"
_FALLBACK_SPEED_IDX = 3
_FALLBACK_WIDTH = 8

_LONG_MAX = 2**63 - 1
_LONG_MIN = -(2**63)

_STRTOL = re.compile(
    r"[ \t\n\v\f\r]*([+-]?)(?:0[xX]([0-9a-fA-F]+)|(0[0-7]*)|([1-9][0-9]*))"
)


def _strtol(text: str) -> int:
    """Parse a leading integer the way strtol does with base 0."""
    match = _STRTOL.match(text)
    if match is None:
        return 0
    sign, hex_digits, oct_digits, dec_digits = match.groups()
    if hex_digits is not None:
        value = int(hex_digits, 16)
    elif oct_digits is not None:
        value = int(oct_digits, 8)
    else:
        value = int(dec_digits)
    return -value if sign == "-" else value


def read_device_property(
    address: PciAddress,
    prop_name: str,
    sysfs_root: str | os.PathLike[str] = "/sys",
) -> str:
    """Return the start of a PCI device property file.

    At most MAX_DEV_PROPERTY_LENGTH characters are read, stopping after a
    newline. An empty file gives an empty string. Raises OSError when the
    file cannot be read.
    """
    path = Path(sysfs_root) / "bus" / "pci" / "devices" / str(address) / prop_name
    with open(path, encoding="ascii", errors="replace") as handle:
        return handle.readline(MAX_DEV_PROPERTY_LENGTH)


def _device_address(node: TopoNode) -> PciAddress:
    if node.type not in (ObjType.BRIDGE, ObjType.PCI_DEVICE):
        raise TopologyError("Expected topology node to be a PCI device or bridge")
    if node.pci is None:
        raise TopologyError("PCI device or bridge is missing its bus id")
    return node.pci


def read_link_speed(
    node: TopoNode, is_nic: bool, sysfs_root: str | os.PathLike[str] = "/sys"
) -> tuple[int, int]:
    """Return (speed index into PCIE_GEN, link width) of a PCI device or bridge.

    NICs reporting an unknown speed or a width of 255 get fallback values.
    Raises TopologyError on an unknown speed or an unusable width.
    """
    address = _device_address(node)

    speed_str = read_device_property(address, SPEED_NAME, sysfs_root)
    speed_idx = next(
        (idx for idx, gen in enumerate(PCIE_GEN) if speed_str.startswith(gen)),
        len(PCIE_GEN),
    )
    if is_nic and speed_str.startswith(_OVERRIDE_SPEED):
        speed_idx = _FALLBACK_SPEED_IDX
        log.info(
            'Override link speed "%s" of NIC %s with speed "%s"',
            speed_str, address, PCIE_GEN[speed_idx],
        )
    if speed_idx == len(PCIE_GEN):
        raise TopologyError(f'Unknown link speed "{speed_str}" of device {address}')

    width_str = read_device_property(address, WIDTH_NAME, sysfs_root)
    if is_nic and width_str.startswith(_OVERRIDE_WIDTH):
        width = _FALLBACK_WIDTH
        log.info(
            'Override link width "%s" of NIC %s with width "%d"', width_str, address, width
        )
    else:
        width = _strtol(width_str)
    if width > _LONG_MAX or width < _LONG_MIN:
        raise TopologyError(
            f'Unable to convert link width "{width_str}" of device {address} '
            "to a valid link width"
        )
    if width <= 0:
        raise TopologyError(f'Unknown link width "{width_str}" of device {address}')
    return speed_idx, width


def read_min_link_speed(
    node: TopoNode, is_nic: bool, sysfs_root: str | os.PathLike[str] = "/sys"
) -> tuple[int, int]:
    """Return the lower speed index and width of a device and its upstream port."""
    if node.parent is None:
        raise TopologyError("PCI device has no upstream bridge")
    device_speed, device_width = read_link_speed(node, is_nic, sysfs_root)
    port_speed, port_width = read_link_speed(node.parent, is_nic, sysfs_root)
    return min(device_speed, port_speed), min(device_width, port_width)


def _pad(indent: int) -> str:
    return " " * indent


def _write_nic(
    node: TopoNode, stream: TextIO, indent: int, sysfs_root: str | os.PathLike[str]
) -> None:
    data = node.data
    assert data is not None
    group_size = data.info_list_len
    speed_idx, width = read_min_link_speed(node, True, sysfs_root)

    # A group of NICs is presented as one faster NIC, up to the GPU's link.
    if group_size > 1:
        gpu = data.gpu_group_node
        if gpu is None:
            raise TopologyError("NIC group has no associated GPU")
        gpu_speed_idx, gpu_width = read_min_link_speed(gpu, False, sysfs_root)
        while group_size > 1 and speed_idx < gpu_speed_idx:
            speed_idx += 1
            group_size //= 2
        while group_size > 1 and 2 * width <= gpu_width:
            width *= 2
            group_size //= 2

    assert node.pci is not None
    stream.write(
        f'{_pad(indent)}<pci busid="{node.pci}" '
        f'link_speed="{PCIE_GEN[speed_idx]} GT/s PCIe/s" '
        f'link_width="{width}"/>\n'
    )


def _numa_mem_child(node: TopoNode) -> TopoNode | None:
    return next(
        (
            child
            for child in node.memory_children
            if child.type is ObjType.NUMANODE and child.data is None
        ),
        None,
    )


def _write_rec(
    node: TopoNode,
    stream: TextIO,
    indent: int,
    bridge_depth: int,
    sysfs_root: str | os.PathLike[str],
) -> None:
    data = node.data
    # Only nodes with a NIC or GPU below them carry data; skip the rest.
    if data is None:
        return

    close_tag: str | None = None
    if node.type is ObjType.BRIDGE:
        if node.pci is None:
            raise TopologyError("Bridge is missing attribute struct")
        # The host switch is the two bridges at depth 0 and 1; every other
        # switch is represented by a pair of bridges.
        if bridge_depth >= 2 and bridge_depth % 2 == 0:
            stream.write(f'{_pad(indent)}<pci busid="{node.pci}">\n')
            close_tag = "</pci>"
            indent += INDENT_OFFSET
        bridge_depth += 1
    elif node.type is ObjType.PCI_DEVICE and data.info_list:
        _write_nic(node, stream, indent, sysfs_root)
        indent += INDENT_OFFSET
    elif node.type is ObjType.NUMANODE:
        stream.write(f'{_pad(indent)}<cpu numaid="{node.os_index}">\n')
        close_tag = "</cpu>"
        indent += INDENT_OFFSET
    else:
        numa = _numa_mem_child(node)
        if numa is not None:
            stream.write(f'{_pad(indent)}<cpu numaid="{numa.os_index}">\n')
            close_tag = "</cpu>"
            indent += INDENT_OFFSET

    for child in [*node.children, *node.memory_children]:
        _write_rec(child, stream, indent, bridge_depth, sysfs_root)

    if close_tag is not None:
        stream.write(f"{_pad(indent - INDENT_OFFSET)}{close_tag}\n")


def write_topology(
    topology: Topology, stream: TextIO, sysfs_root: str | os.PathLike[str] = "/sys"
) -> None:
    """Write the parts of the topology holding NICs or GPUs as topology XML."""
    stream.write('<system version="1">\n')
    _write_rec(topology.root, stream, INDENT_OFFSET, 0, sysfs_root)
    stream.write("</system>")