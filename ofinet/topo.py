"""Hardware topology decoration and grouping of NICs by GPU locality."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum, auto

log = logging.getLogger(__name__)

TARGET_CLASS_ID = 0x03
"""PCI class code of display controllers."""

TARGET_VENDOR_ID = 0x10DE
"""PCI vendor id of NVIDIA."""


class TopologyError(Exception):
    """Raised when the topology is inconsistent or cannot be decorated."""


class ObjType(Enum):
    """Kinds of hardware topology nodes."""

    MACHINE = auto()
    PACKAGE = auto()
    GROUP = auto()
    NUMANODE = auto()
    BRIDGE = auto()
    PCI_DEVICE = auto()
    OS_DEVICE = auto()
    MISC = auto()


@dataclass(frozen=True, order=True)
class PciAddress:
    """PCI bus id of a device: domain, bus, device and function."""

    domain: int
    bus: int
    dev: int
    func: int

    def __str__(self) -> str:
        return f"{self.domain:04x}:{self.bus:02x}:{self.dev:02x}.{self.func:01x}"


@dataclass(frozen=True)
class NicInfo:
    """A network interface offered by the fabric provider."""

    name: str
    pci: PciAddress | None = None


@dataclass(eq=False)
class TopoNode:
    """A node of the hardware topology tree.

    For PCI devices ``pci`` is the device's bus id; for bridges it is the
    bus id of the bridge's upstream side. ``data`` is attached by Topology
    to nodes with a NIC or a GPU below them.
    """

    type: ObjType
    pci: PciAddress | None = None
    class_id: int = 0
    vendor_id: int = 0
    os_index: int = 0
    name: str = ""
    parent: TopoNode | None = field(default=None, init=False, repr=False)
    children: list[TopoNode] = field(default_factory=list, init=False, repr=False)
    memory_children: list[TopoNode] = field(default_factory=list, init=False, repr=False)
    data: NodeData | None = field(default=None, init=False, repr=False)

    def add_child(self, child: TopoNode) -> TopoNode:
        """Attach a child node and return it."""
        child.parent = self
        self.children.append(child)
        return child

    def add_memory_child(self, child: TopoNode) -> TopoNode:
        """Attach a memory child (such as a NUMA node) and return it."""
        child.parent = self
        self.memory_children.append(child)
        return child

    def walk(self) -> Iterator[TopoNode]:
        """Yield this node and its descendants in pre-order, without memory children."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def ancestors(self) -> Iterator[TopoNode]:
        """Yield this node and every node above it up to the root."""
        node: TopoNode | None = self
        while node is not None:
            yield node
            node = node.parent


@dataclass(eq=False)
class NodeData:
    """Grouping state attached to a topology node."""

    node: TopoNode
    info_list: list[NicInfo] | None = None
    num_groups: int = 0
    is_nic_subtree: bool = False
    contributed_gpu: bool = False
    gpu_group_node: TopoNode | None = None

    @property
    def info_list_len(self) -> int:
        return len(self.info_list) if self.info_list else 0


def is_accelerator(node: TopoNode) -> bool:
    """Return whether the node is an NVIDIA GPU PCI device."""
    if node.type is not ObjType.PCI_DEVICE:
        return False
    if node.pci is None:
        raise TopologyError("Invalid PCI device: attributes missing")
    return (node.class_id >> 8) == TARGET_CLASS_ID and node.vendor_id == TARGET_VENDOR_ID


def _data_of(node: TopoNode) -> NodeData:
    if node.data is None:
        raise TopologyError("Invalid user data pointer")
    return node.data


def _info_for_node(node: TopoNode, infos: list[NicInfo]) -> NicInfo | None:
    if not infos:
        raise TopologyError("No info list provided")
    if node.pci is None:
        raise TopologyError("Failed to retrieve attributes from topology node")
    if node.type is not ObjType.PCI_DEVICE:
        return None
    for info in infos:
        if info.pci is None:
            raise TopologyError(f"Failed to retrieve PCI attributes from NIC {info.name}")
        if info.pci == node.pci:
            return info
    return None


class Topology:
    """A hardware topology decorated with NIC and GPU locality data."""

    def __init__(self, root: TopoNode, infos: Iterable[NicInfo]) -> None:
        self.root = root
        self.max_group_size = 0
        self.node_data: list[NodeData] = []
        for node in root.walk():
            node.data = None
            for mem in node.memory_children:
                mem.data = None
        self._decorate(list(infos))

    def _decorate(self, infos: list[NicInfo]) -> None:
        for obj in self.pci_devices():
            accel = is_accelerator(obj)
            info = _info_for_node(obj, infos)
            if accel or info is not None:
                for node in obj.ancestors():
                    if node.data is None:
                        node.data = NodeData(node)
                        self.node_data.append(node.data)
            if info is not None:
                _data_of(obj).info_list = [dataclasses.replace(info)]
                self.max_group_size = 1

    def pci_devices(self) -> Iterator[TopoNode]:
        """Yield every PCI device of the tree in pre-order."""
        return (node for node in self.root.walk() if node.type is ObjType.PCI_DEVICE)

    def find_pci_device(self, address: PciAddress) -> TopoNode | None:
        """Return the PCI device with the given bus id, or None."""
        return next((node for node in self.pci_devices() if node.pci == address), None)

    def group(self) -> None:
        """Group NICs by the GPUs closest to them.

        Afterwards each group is held by the node of its leader, the first
        NIC of the group. Raises TopologyError on an inconsistent topology.
        """
        self._mark_nic_subtrees()
        self._propagate_accel_counts()
        self._lift_up_infos()
        self._create_groups()
        self._log_groups()

    def _mark_nic_subtrees(self) -> None:
        for data in self.node_data:
            if not data.info_list:
                continue
            for node in data.node.ancestors():
                _data_of(node).is_nic_subtree = True

    def _propagate_accel_counts(self) -> None:
        for obj in self.pci_devices():
            if not is_accelerator(obj):
                continue
            data = _data_of(obj)
            if data.contributed_gpu:
                continue
            data.contributed_gpu = True
            for node in obj.ancestors():
                node_data = _data_of(node)
                if node_data.is_nic_subtree:
                    node_data.num_groups += 1
                    node_data.gpu_group_node = obj
                    break

    def _lift_up_infos(self) -> None:
        for source in self.node_data:
            if not source.info_list:
                continue
            target: TopoNode | None = source.node
            if _data_of(source.node).num_groups > 0:
                continue
            while target is not None:
                target_data = _data_of(target)
                if target_data.num_groups > 0:
                    target_data.info_list = source.info_list + (target_data.info_list or [])
                    source.info_list = None
                    break
                target = target.parent
                if target is None:
                    # No GPU claims these NICs; expose each one as its own group.
                    source.num_groups = source.info_list_len

    def _create_groups(self) -> None:
        for data in self.node_data:
            if not data.info_list or data.num_groups == 0:
                continue
            remaining = data.info_list
            num_groups = data.num_groups
            data.info_list = None
            data.num_groups = 0
            try:
                self._split(remaining, data.gpu_group_node, num_groups)
            except TopologyError:
                data.info_list = remaining or None
                raise

    def _split(
        self, remaining: list[NicInfo], gpu_node: TopoNode | None, num_groups: int
    ) -> None:
        num_infos = len(remaining)
        num_groups = min(num_groups, num_infos)
        num_large = num_infos % num_groups
        group_size = num_infos // num_groups + 1

        for idx in range(num_groups):
            if idx == num_large:
                group_size -= 1
            if group_size == 0:
                break

            leader = remaining[0]
            if leader.pci is None:
                raise TopologyError(f"Failed to retrieve PCI attributes from NIC {leader.name}")
            obj = self.find_pci_device(leader.pci)
            if obj is None:
                raise TopologyError(f"No topology node found for NIC {leader.pci}")

            data = _data_of(obj)
            if data.info_list and data.info_list[0] is leader:
                if idx + 1 == num_groups:
                    break
                raise TopologyError("Invalid state of topology")

            data.info_list = remaining[:group_size]
            data.gpu_group_node = gpu_node
            self.max_group_size = max(self.max_group_size, group_size)
            del remaining[:group_size]

    def _log_groups(self) -> None:
        for group_idx, infos in enumerate(self.info_lists()):
            for info_idx, info in enumerate(infos):
                if info.pci is not None:
                    log.info("NIC group %d device #%d %s", group_idx, info_idx, info.pci)

    def info_lists(self) -> Iterator[list[NicInfo]]:
        """Yield the NIC lists held by topology nodes, in decoration order."""
        for data in self.node_data:
            if data.info_list:
                yield list(data.info_list)

    def num_info_lists(self) -> int:
        """Return the number of topology nodes that hold a NIC list."""
        return sum(1 for data in self.node_data if data.info_list)