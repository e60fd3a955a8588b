"""Shared fixtures: a stand-in for dotnet, sips and iconutil."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

import appbundle


class FakeTools:
    """Records every command and mimics the tools' effect on disk."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.published: dict[str, int] = {}
        self.publish_returncode = 0
        self.iconutil_returncode = 0
        self.missing_tools: set[str] = set()

    def tool_calls(self, name: str) -> list[list[str]]:
        return [cmd for cmd in self.calls if Path(cmd[0]).name == name]

    def __call__(self, cmd, cwd=None, check=True, echo=True):
        cmd = [str(part) for part in cmd]
        self.calls.append(cmd)
        tool = Path(cmd[0]).name
        if tool in self.missing_tools:
            raise appbundle.PackagingError(f"Could not start {cmd[0]}: not found")

        returncode = 0
        output = ""
        if tool == "dotnet":
            returncode = self.publish_returncode
            if returncode == 0:
                out_dir = Path(cmd[cmd.index("-o") + 1])
                for name, mode in self.published.items():
                    target = out_dir / name
                    target.write_bytes(f"payload:{name}".encode("utf-8"))
                    os.chmod(target, mode)
            else:
                output = "error NETSDK1004: Assets file not found."
        elif tool == "sips":
            Path(cmd[cmd.index("--out") + 1]).write_bytes(b"png")
        elif tool == "iconutil":
            returncode = self.iconutil_returncode
            if returncode == 0:
                Path(cmd[cmd.index("-o") + 1]).write_bytes(b"icns")
            else:
                output = "AppIcon.iconset:error: Failed to generate ICNS."

        proc = subprocess.CompletedProcess(cmd, returncode, stdout=output)
        if check and returncode != 0:
            raise appbundle.PackagingError(f"Command failed ({returncode}): {' '.join(cmd)}\n{output}")
        return proc


@pytest.fixture()
def tools(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeTools:
    fake = FakeTools()
    monkeypatch.setattr(appbundle, "sh", fake)
    monkeypatch.setenv("APPBUNDLE_WORK_ROOT", str(tmp_path / "work"))
    return fake


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    path = tmp_path / "src" / "Foo.csproj"
    path.parent.mkdir(parents=True)
    path.write_text(
        '<Project Sdk="Microsoft.NET.Sdk">\n'
        "  <PropertyGroup>\n"
        "    <OutputType>Exe</OutputType>\n"
        "    <TargetFramework>net9.0</TargetFramework>\n"
        "  </PropertyGroup>\n"
        "</Project>\n",
        encoding="utf-8",
    )
    return path
