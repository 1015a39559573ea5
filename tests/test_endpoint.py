import pytest

from ofinet.endpoint import (
    SENDRECV_INORDER_OPTION,
    WRITE_INORDER_OPTION,
    EndpointConfigurator,
    check_gdr,
    parse_vf_index,
    read_rail_vf_index,
    sort_rails,
)
from ofinet.platform import PlatformError, lookup_platform


class Recorder:
    def __init__(self, result=True):
        self.result = result
        self.calls = []

    def __call__(self, option):
        self.calls.append(option)
        return self.result


def test_check_gdr_raises_on_required_platform():
    with pytest.raises(PlatformError, match="p5.48xlarge"):
        check_gdr(lookup_platform("p5.48xlarge"), False, False)


def test_configure_gdr_check_can_be_disabled():
    cfg = EndpointConfigurator(
        "SENDRECV",
        platform=lookup_platform("p4d.24xlarge"),
        disable_gdr_required_check=True,
    )
    rec = Recorder(True)
    assert cfg.configure("efa", rec, {}) is True
    assert rec.calls == [SENDRECV_INORDER_OPTION]


def test_configure_gdr_missing_raises():
    cfg = EndpointConfigurator("SENDRECV", platform=lookup_platform("p4d.24xlarge"))
    with pytest.raises(PlatformError):
        cfg.configure("efa", Recorder(), {})


def test_non_efa_provider_is_untouched():
    cfg = EndpointConfigurator("SENDRECV")
    rec = Recorder(False)
    env = {}
    assert cfg.configure("tcp", rec, env) is False
    assert rec.calls == []
    assert env == {}
    assert cfg.proto_configured is False


def test_ordering_supported_keeps_proto_unset():
    cfg = EndpointConfigurator("SENDRECV", platform=lookup_platform("g5.48xlarge"))
    env = {}
    assert cfg.configure("efa", Recorder(True), env) is True
    assert "NCCL_PROTO" not in env
    assert cfg.proto_configured is True


def test_ordering_unsupported_sets_simple_proto_once():
    cfg = EndpointConfigurator("SENDRECV")
    env = {}
    first = Recorder(False)
    assert cfg.configure("efa", first, env) is False
    assert env["NCCL_PROTO"] == "simple"
    second = Recorder(False)
    cfg.configure("efa", second, env)
    assert second.calls == []


def test_existing_proto_is_not_overwritten():
    cfg = EndpointConfigurator("SENDRECV")
    env = {"NCCL_PROTO": "LL128"}
    cfg.configure("efa", Recorder(False), env)
    assert env["NCCL_PROTO"] == "LL128"


def test_ordering_lost_after_initialization_raises():
    cfg = EndpointConfigurator("SENDRECV")
    cfg.configure("efa", Recorder(True), {})
    with pytest.raises(PlatformError, match=SENDRECV_INORDER_OPTION):
        cfg.configure("efa", Recorder(False), {})


def test_rdma_uses_write_option_and_sets_max_msg_size():
    sizes = []

    def set_size(size):
        sizes.append(size)
        return True

    cfg = EndpointConfigurator("rdma", max_msg_size=8192, set_max_msg_size=set_size)
    rec = Recorder(True)
    assert cfg.configure("efa", rec, {}) is True
    assert rec.calls == [WRITE_INORDER_OPTION]
    assert sizes == [8192]


@pytest.mark.parametrize("emulated", [True, None])
def test_rdma_emulated_write_rejected(emulated):
    cfg = EndpointConfigurator("RDMA", emulated_write=emulated)
    with pytest.raises(PlatformError):
        cfg.configure("efa", Recorder(), {})


def test_rdma_native_check_can_be_disabled():
    cfg = EndpointConfigurator("RDMA", emulated_write=True, disable_native_rdma_check=True)
    rec = Recorder(True)
    assert cfg.configure("efa", rec, {}) is True
    assert rec.calls == [WRITE_INORDER_OPTION]


def test_unknown_protocol_raises():
    cfg = EndpointConfigurator("BOGUS")
    with pytest.raises(PlatformError, match="BOGUS"):
        cfg.configure("efa", Recorder(), {})


def test_without_cuda_no_ordering_attempted():
    cfg = EndpointConfigurator("SENDRECV", have_cuda=False)
    rec = Recorder(True)
    env = {}
    assert cfg.configure("efa", rec, env) is False
    assert rec.calls == []
    assert env == {}


def test_parse_vf_index():
    assert parse_vf_index("0000:0000:0000:0001") == 1
    assert parse_vf_index("abcd:ef01:2345:6700") == 0


@pytest.mark.parametrize(
    "guid",
    ["0000:0000:0000:001", "0000:0000:00000001", "0000:0000:0000:00ab", "0000:0000:0000:0001\n"],
)
def test_parse_vf_index_rejects_bad_format(guid):
    with pytest.raises(ValueError):
        parse_vf_index(guid)


def test_read_rail_vf_index(tmp_path):
    device = tmp_path / "class" / "infiniband" / "rdmap0s1"
    device.mkdir(parents=True)
    (device / "node_guid").write_text("0000:0000:0000:0001\n")
    assert read_rail_vf_index("rdmap0s1", tmp_path) == 1


def test_read_rail_vf_index_missing_file(tmp_path):
    with pytest.raises(OSError):
        read_rail_vf_index("absent", tmp_path)


def test_read_rail_vf_index_empty_file(tmp_path):
    device = tmp_path / "class" / "infiniband" / "dev"
    device.mkdir(parents=True)
    (device / "node_guid").write_text("")
    with pytest.raises(OSError):
        read_rail_vf_index("dev", tmp_path)


def test_sort_rails_interleaved():
    vf = {"a": 0, "b": 1, "c": 0, "d": 1}
    assert sort_rails(["a", "b", "c", "d"], 4, vf.__getitem__) == ["a", "c", "b", "d"]


def test_sort_rails_already_ordered_is_stable():
    vf = {"a": 0, "b": 0, "c": 1, "d": 1}
    infos = ["a", "b", "c", "d"]
    assert sort_rails(infos, 4, vf.__getitem__) == infos


def test_sort_rails_truncates_to_num_rails():
    vf = {"a": 1, "b": 0, "c": 0}
    result = sort_rails(["b", "a", "c"], 2, vf.__getitem__)
    # Slot 2 is out of range for two rails, so the input is kept.
    assert result == ["b", "a", "c"]


def test_sort_rails_invalid_vf_keeps_input():
    infos = ["a", "b"]
    assert sort_rails(infos, 2, lambda info: 5) == infos


def test_sort_rails_lookup_failure_keeps_input():
    def fail(info):
        raise OSError("unreadable")

    assert sort_rails(["a", "b"], 2, fail) == ["a", "b"]


def test_sort_rails_too_few_infos_keeps_input():
    assert sort_rails(["a"], 2, lambda info: 0) == ["a"]


def test_sort_rails_is_a_permutation():
    vf = {"w": 1, "x": 1, "y": 0, "z": 0}
    infos = ["w", "x", "y", "z"]
    result = sort_rails(infos, 4, vf.__getitem__)
    assert sorted(result) == sorted(infos)
    assert [vf[i] for i in result] == [0, 0, 1, 1]