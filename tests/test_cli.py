"""Tests for virtlab.cli module."""

from __future__ import annotations

import textwrap
from unittest.mock import MagicMock, patch

import pytest
import yaml

from virtlab import cli
from virtlab.exceptions import BackendOperationFailed, ManagerError
from virtlab.lxd import LxdBackend
from virtlab.models import ProvisionSettings, Runtime

TOPOLOGY = textwrap.dedent(
    """
    networks:
      net1:
        subnet: 10.0.0.0/24
    instances:
      host1:
        image: ubuntu
        interfaces:
          eth0: net1
    """
)


@pytest.fixture
def topology_file(tmp_path):
    path = tmp_path / "topology.yaml"
    path.write_text(TOPOLOGY)
    return path


class TestBuildParser:
    def test_create_requires_config(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["create"])

    def test_create_options(self, topology_file):
        args = cli.build_parser().parse_args(["create", "-c", str(topology_file), "--backend", "libvirt", "--show-runtime"])
        assert args.command == "create"
        assert args.config == topology_file
        assert args.backend == "libvirt"
        assert args.show_runtime is True

    def test_simulate_config_optional(self):
        args = cli.build_parser().parse_args(["simulate"])
        assert args.config is None

    def test_unknown_backend_rejected(self, topology_file):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["destroy", "-c", str(topology_file), "--backend", "xen"])


class TestMakeBackend:
    def test_lxd(self):
        backend = cli.make_backend(ProvisionSettings(backend="lxd", lxc_bin="/snap/bin/lxc"), Runtime())
        assert isinstance(backend, LxdBackend)
        assert backend.lxc_bin == "/snap/bin/lxc"

    def test_unsupported(self):
        with pytest.raises(ManagerError, match="Unsupported backend"):
            cli.make_backend(ProvisionSettings(backend="xen"), Runtime())


class TestSimulate:
    def test_demo_topology(self, capsys):
        assert cli.main(["simulate"]) == 0
        out = capsys.readouterr().out
        runtime_doc = out.split("# runtime", 1)[1]
        data = yaml.safe_load(runtime_doc)
        assert data["networks"]["net1"]["gateway"] == "10.0.0.1"
        host1 = data["instances"]["host1"]
        assert host1["interfaces"]["eth0"]["address"] == "10.0.0.2/24"
        assert host1["routes"][0]["subnet"] == "10.0.1.0/24"

    def test_from_file(self, topology_file, capsys):
        assert cli.main(["simulate", "-c", str(topology_file)]) == 0
        assert "10.0.0.2/24" in capsys.readouterr().out

    def test_missing_file_reports_error(self, tmp_path):
        with patch("virtlab.cli.log") as mock_log:
            assert cli.main(["simulate", "-c", str(tmp_path / "nope.yaml")]) == 1
        level, message = mock_log.call_args[0]
        assert level == "ERROR"
        assert "Topology file missing" in message


class TestCreateDestroy:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        monkeypatch.delenv("VIRTLAB_BACKEND", raising=False)

    def test_create_runs_provisioner(self, topology_file):
        backend = MagicMock()
        with patch("virtlab.cli.make_backend", return_value=backend) as mock_make:
            with patch("virtlab.cli.Provisioner") as mock_prov:
                assert cli.main(["create", "-c", str(topology_file), "--backend", "libvirt"]) == 0
        settings = mock_make.call_args.args[0]
        assert settings.backend == "libvirt"
        mock_prov.return_value.create.assert_called_once_with()
        backend.close.assert_called_once_with()

    def test_create_failure_returns_one(self, topology_file):
        backend = MagicMock()
        with patch("virtlab.cli.make_backend", return_value=backend):
            with patch("virtlab.cli.Provisioner") as mock_prov, patch("virtlab.cli.log") as mock_log:
                mock_prov.return_value.create.side_effect = BackendOperationFailed("host1", "launch", "boom")
                assert cli.main(["create", "-c", str(topology_file)]) == 1
        mock_log.assert_called_once_with("ERROR", "launch failed for host1: boom")
        backend.close.assert_called_once_with()

    def test_destroy_with_failures_returns_one(self, topology_file):
        with patch("virtlab.cli.make_backend", return_value=MagicMock()):
            with patch("virtlab.cli.Provisioner") as mock_prov:
                mock_prov.return_value.destroy.return_value = [BackendOperationFailed("host1", "destroy")]
                assert cli.main(["destroy", "-c", str(topology_file)]) == 1

    def test_destroy_clean_returns_zero(self, topology_file):
        with patch("virtlab.cli.make_backend", return_value=MagicMock()):
            with patch("virtlab.cli.Provisioner") as mock_prov:
                mock_prov.return_value.destroy.return_value = []
                assert cli.main(["destroy", "-c", str(topology_file)]) == 0

    def test_bad_environment_reported(self, topology_file, monkeypatch):
        monkeypatch.setenv("VIRTLAB_BACKEND", "xen")
        with patch("virtlab.cli.log") as mock_log:
            assert cli.main(["create", "-c", str(topology_file)]) == 1
        assert "Unsupported VIRTLAB_BACKEND" in mock_log.call_args[0][1]

    def test_unexpected_error_returns_one(self, topology_file, capsys):
        with patch("virtlab.cli.build_runtime", side_effect=KeyError("x")), patch("virtlab.cli.log") as mock_log:
            assert cli.main(["create", "-c", str(topology_file)]) == 1
        assert mock_log.call_args[0][1].startswith("Unexpected error")
