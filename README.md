# ofinet

Helpers for setting up collective communication over fabric NICs on EC2
instances. The package covers instance-type defaults, per-endpoint checks,
ordering of NIC rails, and grouping of NICs by how close they are to GPUs in
the PCI topology.

## Modules

- **`ofinet.platform`**: `read_platform_type` reads the instance type from
  the first line of the DMI product name file. It returns `None` when the
  file cannot be read. `lookup_platform` returns the `PlatformData`
  defaults for a known instance type, or `None` for any other.
  `configure_platform(platform_type, environ, settings)` changes the given
  environment mapping in place. It fills in fork-safety, NVLS, flush,
  chunk-size and topology-file variables, and returns a `PlatformConfig`
  holding the resolved provider filter, duplicate connections, latency,
  protocol and domain-per-thread setting. User choices and build facts come
  in through `PluginSettings`. `PlatformError` is raised when the topology
  file path is too long.
- **`ofinet.endpoint`**:
  - `check_gdr` raises `PlatformError` when an instance type that requires
    GPUDirect runs without it.
  - `EndpointConfigurator.configure` applies the GDR check, the native RDMA
    write check and the 128-byte in-order option for each EFA endpoint. The
    in-order option is set through a callback you pass in. When in-order
    delivery is not available, `NCCL_PROTO` is set to `simple`.
  - `parse_vf_index` and `read_rail_vf_index` get the virtual-function
    index from a node GUID. `sort_rails` puts the rails of VF 0 first, then
    those of VF 1.
- **`ofinet.topo`**: you build the PCI topology tree yourself from
  `TopoNode` objects, with `add_child` and `add_memory_child`, and pass it
  to `Topology` together with the `NicInfo` list. `Topology.group()` splits
  the NICs into groups by their nearest GPU. `info_lists()` and
  `num_info_lists()` report the groups that result. `TopologyError` is
  raised when the topology is inconsistent.
- **`ofinet.topo_writer`**: `write_topology(topology, stream, sysfs_root)`
  writes the parts of a grouped topology that hold NICs or GPUs as
  topology XML. It reads link speeds and widths from
  `<sysfs_root>/bus/pci/devices/<busid>/`. `read_device_property`,
  `read_link_speed` and `read_min_link_speed` expose those reads on their
  own.

## Installation

```
pip install .
```

## Examples

Resolve the settings for an instance type against a private environment:

```python
from ofinet.platform import PluginSettings, configure_platform

env = {}
config = configure_platform("p5.48xlarge", environ=env, settings=PluginSettings())
print(config.selected_protocol)        # RDMA
print(env["NCCL_NET_FORCE_FLUSH"])     # 0
```

Group a NIC with the GPU behind the same bridge:

```python
from ofinet.topo import NicInfo, ObjType, PciAddress, TopoNode, Topology

root = TopoNode(ObjType.MACHINE)
bridge = root.add_child(TopoNode(ObjType.BRIDGE, pci=PciAddress(0, 0, 0, 0)))
bridge.add_child(TopoNode(ObjType.PCI_DEVICE, pci=PciAddress(0, 0x10, 0, 0),
                          class_id=0x0302, vendor_id=0x10DE))
bridge.add_child(TopoNode(ObjType.PCI_DEVICE, pci=PciAddress(0, 0x11, 0, 0)))

topology = Topology(root, [NicInfo("rdmap0", PciAddress(0, 0x11, 0, 0))])
topology.group()
print(topology.num_info_lists())       # 1
```

## What the package does not do

- It does not choose collective algorithms or protocols, and it has no cost
  tables.
- It does not open fabric endpoints or query providers. Endpoint options
  reach it as values and callbacks that the caller supplies.
- It does not discover hardware. The caller builds the topology tree, and
  only link speeds and widths are read from sysfs.
- It has no command-line program.

## Tests

```
pip install .[test]
pytest
```