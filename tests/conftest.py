from __future__ import annotations

import json
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.app.dependencies import reset_cached_dependencies
from backend.app.main import create_app

# Stand-in for yt-dlp. Behaviour is read from a JSON file named by the
# FAKE_EXTRACTOR_CONFIG env var so each test can pick its own scenario.
FAKE_EXTRACTOR_SOURCE = r'''
import json
import os
import subprocess
import sys
import time

with open(os.environ["FAKE_EXTRACTOR_CONFIG"], encoding="utf-8") as handle:
    config = json.load(handle)

args = sys.argv[1:]
with open(config["args_log"], "a", encoding="utf-8") as handle:
    handle.write(json.dumps(args) + "\n")

if config.get("pid_file"):
    with open(config["pid_file"], "w", encoding="utf-8") as handle:
        handle.write(str(os.getpid()))

if config.get("spawn_child"):
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    with open(config["child_pid_file"], "w", encoding="utf-8") as handle:
        handle.write(str(child.pid))

sys.stderr.write(config.get("stderr", ""))
sys.stderr.flush()

if config.get("sleep"):
    time.sleep(config["sleep"])

if "-F" in args:
    sys.stdout.write(config.get("listing", ""))
    sys.stdout.flush()
elif "-o" in args:
    output = args[args.index("-o") + 1]
    if output == "-":
        payload = config.get("stream_bytes", "").encode("utf-8")
        sys.stdout.buffer.write(payload)
        sys.stdout.buffer.flush()
        if config.get("stream_forever"):
            while True:
                sys.stdout.buffer.write(b"x" * 1024)
                sys.stdout.buffer.flush()
                time.sleep(0.01)
    elif config.get("write_bytes"):
        with open(output, "wb") as handle:
            handle.write(config["write_bytes"].encode("utf-8"))

sys.exit(config.get("exit_code", 0))
'''


class FakeExtractor:
    def __init__(self, root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        self.root = root
        self.script_path = root / "fake_extractor.py"
        self.script_path.write_text(FAKE_EXTRACTOR_SOURCE, encoding="utf-8")
        self.config_path = root / "fake_extractor.json"
        self.args_log = root / "fake_extractor_args.log"
        self.pid_file = root / "fake_extractor.pid"
        self.child_pid_file = root / "fake_extractor_child.pid"
        monkeypatch.setenv("FAKE_EXTRACTOR_CONFIG", str(self.config_path))
        self.configure()

    @property
    def command(self) -> tuple[str, ...]:
        return (sys.executable, str(self.script_path))

    def configure(self, **behaviour: object) -> None:
        config = {
            "args_log": str(self.args_log),
            "pid_file": str(self.pid_file),
            "child_pid_file": str(self.child_pid_file),
            **behaviour,
        }
        self.config_path.write_text(json.dumps(config), encoding="utf-8")

    def calls(self) -> list[list[str]]:
        if not self.args_log.exists():
            return []
        return [
            json.loads(line)
            for line in self.args_log.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]

    def last_pid(self) -> int:
        return int(self.pid_file.read_text(encoding="utf-8"))

    def child_pid(self) -> int:
        return int(self.child_pid_file.read_text(encoding="utf-8"))


@pytest.fixture
def fake_extractor(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeExtractor:
    root = tmp_path / "extractor"
    root.mkdir()
    return FakeExtractor(root, monkeypatch)


@pytest.fixture
def runtime_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("MP3VAULT_DATA_DIR", str(data_dir))
    monkeypatch.setenv("MP3VAULT_CREDENTIAL_REFRESH_ENABLED", "0")
    monkeypatch.setenv("MP3VAULT_DOWNLOAD_SWEEPER_ENABLED", "0")
    monkeypatch.setenv("MP3VAULT_TELEMETRY_SINK", "none")
    monkeypatch.delenv("MP3VAULT_CREDENTIAL_ACCESS_KEY", raising=False)
    monkeypatch.delenv("MP3VAULT_CREDENTIAL_SOURCE_URL", raising=False)
    reset_cached_dependencies()
    return data_dir


@pytest.fixture
def client(runtime_env: Path) -> Iterator[TestClient]:
    _ = runtime_env
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
