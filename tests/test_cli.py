"""Tests for the libartifact CLI."""

import json

import pytest
import yaml
from click.testing import CliRunner

from conftest import FakeTransport, RecordingWaiter
from libartifact import __version__
from libartifact.cli import cli
from libartifact.facade import ArtifactFacade
from libartifact.store import LocalArtifactStore
from libartifact.sync import RegistrySyncEngine


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for var in ("LIBARTIFACT_STORAGE_PATH", "LIBARTIFACT_MAX_RETRIES", "LIBARTIFACT_RETRY_DELAY"):
        monkeypatch.delenv(var, raising=False)
    path = tmp_path / "libartifact.yaml"
    path.write_text(yaml.dump({"storage_path": str(tmp_path / "store"), "log_level": "WARNING"}))
    return str(path)


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_add_list_inspect_extract_rm(runner, config_file, make_file, tmp_path):
    source = make_file("model.bin", b"weights")

    result = runner.invoke(cli, ["--config", config_file, "add", "demo", str(source), "-a", "stage=dev"])
    assert result.exit_code == 0, result.output
    digest = result.output.strip().splitlines()[-1]
    assert digest.startswith("sha256:")

    result = runner.invoke(cli, ["--config", config_file, "ls", "--format", "json"])
    assert result.exit_code == 0, result.output
    listed = json.loads(result.output)
    assert listed == [{"name": "localhost/demo:latest", "digest": digest, "size": 7, "blobs": 1}]

    result = runner.invoke(cli, ["--config", config_file, "ls"])
    assert result.exit_code == 0
    assert "localhost/demo" in result.output

    result = runner.invoke(cli, ["--config", config_file, "inspect", "demo"])
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["digest"] == digest
    assert data["manifest"]["annotations"] == {"stage": "dev"}

    out = tmp_path / "out"
    out.mkdir()
    result = runner.invoke(cli, ["--config", config_file, "extract", "demo", str(out)])
    assert result.exit_code == 0, result.output
    assert (out / "model.bin").read_bytes() == b"weights"

    result = runner.invoke(cli, ["--config", config_file, "rm", "demo"])
    assert result.exit_code == 0
    assert digest in result.output


def test_add_append(runner, config_file, make_file):
    runner.invoke(cli, ["--config", config_file, "add", "demo", str(make_file("a.txt", b"a"))])
    result = runner.invoke(cli, ["--config", config_file, "add", "--append", "demo", str(make_file("b.txt", b"b"))])
    assert result.exit_code == 0, result.output

    result = runner.invoke(cli, ["--config", config_file, "ls", "--format", "json"])
    assert json.loads(result.output)[0]["blobs"] == 2


def test_errors_exit_with_code_1(runner, config_file):
    result = runner.invoke(cli, ["--config", config_file, "inspect", "missing"])
    assert result.exit_code == 1
    assert "Error:" in result.output

    result = runner.invoke(cli, ["--config", config_file, "rm"])
    assert result.exit_code == 1

    result = runner.invoke(cli, ["--config", config_file, "rm", "--all", "demo"])
    assert result.exit_code == 1


def test_bad_annotation(runner, config_file, make_file):
    result = runner.invoke(cli, ["--config", config_file, "add", "demo", str(make_file("a.txt")), "-a", "novalue"])
    assert result.exit_code == 2


def test_push_and_pull(runner, config_file, make_file, tmp_path):
    transport = FakeTransport()
    store = LocalArtifactStore()
    facade = ArtifactFacade(store, RegistrySyncEngine(transport, waiter=RecordingWaiter()))
    digest_file = tmp_path / "digest"

    result = runner.invoke(
        cli, ["--config", config_file, "add", "demo", str(make_file("a.txt", b"alpha"))],
        obj={"facade": facade},
    )
    assert result.exit_code == 0, result.output

    result = runner.invoke(
        cli,
        ["--config", config_file, "push", "demo", "registry.test/demo/app:v1",
         "--no-tls-verify", "--digestfile", str(digest_file), "--retry", "0"],
        obj={"facade": facade},
    )
    assert result.exit_code == 0, result.output
    assert digest_file.read_text() == store.get("demo").digest
    assert transport.tls[0].verify is False

    result = runner.invoke(
        cli, ["--config", config_file, "pull", "registry.test/demo/app:v1", "--quiet"],
        obj={"facade": facade},
    )
    assert result.exit_code == 0, result.output
    assert store.get("registry.test/demo/app:v1").digest == store.get("demo").digest


def test_push_validation_error(runner, config_file, make_file):
    transport = FakeTransport()
    facade = ArtifactFacade(LocalArtifactStore(), RegistrySyncEngine(transport, waiter=RecordingWaiter()))
    runner.invoke(cli, ["--config", config_file, "add", "demo", str(make_file("a.txt"))], obj={"facade": facade})

    result = runner.invoke(
        cli,
        ["--config", config_file, "push", "demo", "registry.test/demo/app:v1", "--encrypt-layer", "0"],
        obj={"facade": facade},
    )
    assert result.exit_code == 1
    assert "validation" in result.output
    assert transport.calls == []
