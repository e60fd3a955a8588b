#!/usr/bin/env python3
# appbundle - .NET publish to macOS .app bundle packager

"""
Turns a .NET project into a macOS .app bundle.

Publishes the project self-contained for one runtime, lays out the
Contents/MacOS and Contents/Resources folders, writes Info.plist and builds
AppIcon.icns with sips/iconutil.

Usage:
  appbundle <path-to-csproj> [output-dir] [app-name] [icon-path] [runtime]
"""

from __future__ import annotations

import argparse
import base64
import os
import re
import shutil
import stat
import subprocess
import sys
import tempfile
import traceback
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Callable, Sequence
from xml.sax.saxutils import escape


DEFAULT_RUNTIME = "osx-arm64"
BUNDLE_ID_PREFIX = "com.example."
BUNDLE_VERSION = "1.0"
MINIMUM_SYSTEM_VERSION = "10.12"
INFO_DICTIONARY_VERSION = "6.0"
ICON_NAME = "AppIcon"
ICON_SIZES = (16, 32, 128, 256, 512)
RASTER_ICON_SUFFIXES = {".png", ".jpg", ".jpeg"}
TOKEN_PATTERN = re.compile(r"{{\s*([A-Za-z0-9_]+)\s*}}")

# Published files that are never the entry point.
NON_EXECUTABLE_SUFFIXES = {".dll", ".pdb", ".json", ".xml", ".config"}

# 1x1 solid blue PNG; sips scales it up to every iconset size.
DEFAULT_ICON_PNG = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="

TOOL_ENV = {
    "dotnet": "APPBUNDLE_DOTNET",
    "sips": "APPBUNDLE_SIPS",
    "iconutil": "APPBUNDLE_ICONUTIL",
}
TOOL_KNOWN_LOCATIONS = {
    "dotnet": [Path("/usr/local/share/dotnet/dotnet"), Path("/opt/homebrew/bin/dotnet")],
    "sips": [Path("/usr/bin/sips")],
    "iconutil": [Path("/usr/bin/iconutil")],
}

INFO_PLIST_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>CFBundleExecutable</key>
    <string>{{Executable}}</string>
    <key>CFBundleIdentifier</key>
    <string>{{BundleIdentifier}}</string>
    <key>CFBundleName</key>
    <string>{{ProductName}}</string>
    <key>CFBundlePackageType</key>
    <string>APPL</string>
    <key>LSMinimumSystemVersion</key>
    <string>{{MinimumSystemVersion}}</string>
    <key>CFBundleIconFile</key>
    <string>{{IconFile}}</string>
    <key>CFBundleInfoDictionaryVersion</key>
    <string>{{InfoDictionaryVersion}}</string>
    <key>CFBundleShortVersionString</key>
    <string>{{Version}}</string>
</dict>
</plist>
"""


class PackagingError(RuntimeError):
    pass


def log(msg: str) -> None:
    print(msg, flush=True)


def work_root() -> Path:
    override = os.environ.get("APPBUNDLE_WORK_ROOT")
    if override:
        return Path(override)
    return Path(tempfile.gettempdir()) / "AppBundleCreator"


def locate_tool(name: str) -> str:
    env_var = TOOL_ENV.get(name)
    override = os.environ.get(env_var) if env_var else None
    if override:
        log(f"[config] Using {name} from {env_var}: {override}")
        return override

    path_candidate = shutil.which(name)
    if path_candidate:
        return path_candidate

    for loc in TOOL_KNOWN_LOCATIONS.get(name, []):
        if loc.exists():
            return str(loc)
    return name


def sh(cmd: list[str], cwd: Path | None = None, check: bool = True, echo: bool = True) -> subprocess.CompletedProcess:
    """Run a subprocess, capturing stdout and stderr together."""
    log(f"[run] {' '.join(cmd)}")
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except OSError as exc:
        raise PackagingError(f"Could not start {cmd[0]}: {exc}") from exc
    if echo and proc.stdout:
        print(proc.stdout, end="", flush=True)
    if check and proc.returncode != 0:
        detail = (proc.stdout or "").strip()
        message = f"Command failed ({proc.returncode}): {' '.join(cmd)}"
        if detail:
            message += f"\n{detail}"
        raise PackagingError(message)
    return proc


def read_assembly_name(project: Path) -> str | None:
    try:
        tree = ET.parse(project)
    except (ET.ParseError, OSError):
        return None

    for node in tree.getroot().iter():
        tag = node.tag.rsplit("}", 1)[-1]  # strip XML namespace if present
        text = (node.text or "").strip()
        if tag == "AssemblyName" and text:
            return text
    return None


def publish_project(project: Path, rid: str, publish_dir: Path) -> list[Path]:
    """Publish a self-contained release build of the project into publish_dir."""
    if publish_dir.exists():
        shutil.rmtree(publish_dir)
    publish_dir.mkdir(parents=True, exist_ok=True)

    log("[mac] Running dotnet publish...")
    cmd = [
        locate_tool("dotnet"),
        "publish",
        str(project),
        "-r",
        rid,
        "-c",
        "Release",
        "--self-contained",
        "-o",
        str(publish_dir),
    ]
    try:
        sh(cmd)
    except PackagingError as exc:
        raise PackagingError(f"dotnet publish failed.\n{exc}") from exc
    log("[mac] dotnet publish successful.")
    return sorted(publish_dir.iterdir())


def bundle_paths(output_dir: Path, app_name: str) -> tuple[Path, Path, Path, Path]:
    bundle_root = output_dir / f"{app_name}.app"
    contents_dir = bundle_root / "Contents"
    return bundle_root, contents_dir, contents_dir / "MacOS", contents_dir / "Resources"


def create_bundle_skeleton(output_dir: Path, app_name: str) -> tuple[Path, Path, Path, Path]:
    paths = bundle_paths(output_dir, app_name)
    bundle_root, _contents, macos_dir, resources_dir = paths
    if bundle_root.exists():
        shutil.rmtree(bundle_root)
    macos_dir.mkdir(parents=True, exist_ok=True)
    resources_dir.mkdir(parents=True, exist_ok=True)
    return paths


def copy_publish_tree(src: Path, dest: Path) -> None:
    for item in sorted(src.iterdir()):
        target = dest / item.name
        if item.is_dir():
            shutil.copytree(item, target, symlinks=True, dirs_exist_ok=True)
        else:
            shutil.copy2(item, target)


# Executable detection. Each strategy returns a file name or None.

def match_assembly_name(files: Sequence[Path], project_name: str, assembly_name: str | None = None) -> str | None:
    if not assembly_name:
        return None
    for path in files:
        if path.name == assembly_name and path.is_file():
            return path.name
    return None


def match_project_name(files: Sequence[Path], project_name: str, assembly_name: str | None = None) -> str | None:
    for path in files:
        if path.name == project_name and path.is_file():
            return path.name
    return None


def match_first_executable(files: Sequence[Path], project_name: str, assembly_name: str | None = None) -> str | None:
    for path in files:
        if not path.is_file():
            continue
        if path.suffix.lower() in NON_EXECUTABLE_SUFFIXES:
            continue
        if path.stat().st_mode & stat.S_IXUSR:
            return path.name
    return None


EXECUTABLE_STRATEGIES: list[Callable[..., str | None]] = [
    match_project_name,
    match_assembly_name,
    match_first_executable,
]


def detect_executable(files: Sequence[Path], project_name: str, assembly_name: str | None = None) -> str:
    for strategy in EXECUTABLE_STRATEGIES:
        found = strategy(files, project_name, assembly_name)
        if found:
            return found
    log(f"[warn] No published executable found; Info.plist will reference '{project_name}'.")
    return project_name


def bundle_identifier(app_name: str) -> str:
    return f"{BUNDLE_ID_PREFIX}{app_name.replace(' ', '-')}"


def replace_tokens(template: str, tokens: dict[str, str]) -> str:
    leftover = sorted(set(TOKEN_PATTERN.findall(template)) - set(tokens))
    if leftover:
        raise PackagingError(f"Unreplaced tokens remain in Info.plist template: {', '.join(leftover)}.")
    return TOKEN_PATTERN.sub(lambda match: escape(tokens[match.group(1)]), template)


def render_info_plist(executable: str, app_name: str) -> str:
    tokens = {
        "Executable": executable,
        "BundleIdentifier": bundle_identifier(app_name),
        "ProductName": app_name,
        "MinimumSystemVersion": MINIMUM_SYSTEM_VERSION,
        "IconFile": ICON_NAME,
        "InfoDictionaryVersion": INFO_DICTIONARY_VERSION,
        "Version": BUNDLE_VERSION,
    }
    return replace_tokens(INFO_PLIST_TEMPLATE, tokens)


def resize_image(source: Path, output: Path, width: int, height: int) -> None:
    sh(
        [locate_tool("sips"), "-z", str(height), str(width), str(source), "--out", str(output)],
        check=False,
        echo=False,
    )


def convert_image_to_icns(source: Path, destination: Path) -> bool:
    """
    Build an .icns from a single raster image.

    Renders every iconset size (plus @2x) with sips, then packs the iconset
    with iconutil. Failures are logged and reported as False.
    """
    temp_dir = Path(tempfile.mkdtemp(prefix="AppBundleCreator_Icon_"))
    try:
        iconset_dir = temp_dir / f"{ICON_NAME}.iconset"
        iconset_dir.mkdir()
        for size in ICON_SIZES:
            resize_image(source, iconset_dir / f"icon_{size}x{size}.png", size, size)
            resize_image(source, iconset_dir / f"icon_{size}x{size}@2x.png", size * 2, size * 2)

        proc = sh(
            [locate_tool("iconutil"), "-c", "icns", str(iconset_dir), "-o", str(destination)],
            check=False,
            echo=False,
        )
        if proc.returncode != 0:
            log("[icon] Error running iconutil:")
            log((proc.stdout or "").rstrip())
            return False
        return True
    except (PackagingError, OSError) as exc:
        log(f"[icon] Error converting icon: {exc}")
        return False
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)


def create_default_icon(destination: Path) -> bool:
    fd, temp_name = tempfile.mkstemp(suffix=".png")
    temp_png = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(base64.b64decode(DEFAULT_ICON_PNG))
        return convert_image_to_icns(temp_png, destination)
    except OSError as exc:
        log(f"[icon] Error creating default icon: {exc}")
        return False
    finally:
        temp_png.unlink(missing_ok=True)


def install_icon(icon_path: Path | None, destination: Path) -> bool:
    if icon_path is None:
        log("[icon] No icon provided; creating default.")
        return create_default_icon(destination)
    if not icon_path.is_file():
        log(f"[warn] Icon not found at {icon_path} - using default.")
        return create_default_icon(destination)

    log(f"[icon] Processing icon: {icon_path}")
    suffix = icon_path.suffix.lower()
    if suffix == ".icns":
        try:
            shutil.copy2(icon_path, destination)
        except OSError as exc:
            log(f"[warn] Could not copy icon {icon_path}: {exc} - using default.")
            return create_default_icon(destination)
        return True
    if suffix in RASTER_ICON_SUFFIXES:
        return convert_image_to_icns(icon_path, destination)
    log(f"[warn] Unsupported icon format '{icon_path.suffix}'. Using default.")
    return create_default_icon(destination)


def ensure_executable(path: Path) -> bool:
    try:
        mode = path.stat().st_mode
        path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as exc:
        log(f"[warn] Could not set unix file permissions on {path.name}: {exc}")
        return False
    log(f"[mac] Set executable permissions for {path.name}")
    return True


def assemble(project: Path, output_dir: Path, app_name: str, icon_path: Path | None, runtime: str) -> Path:
    """Publish the project and assemble <output_dir>/<app_name>.app."""
    log(f"Building App Bundle for: {project}")
    log(f"Output Directory: {output_dir}")
    log(f"App Name: {app_name}")
    log(f"Runtime: {runtime}")

    publish_dir = work_root() / app_name / "publish"
    published = publish_project(project, runtime, publish_dir)

    bundle_root, contents_dir, macos_dir, resources_dir = create_bundle_skeleton(output_dir, app_name)

    log("[mac] Copying files...")
    copy_publish_tree(publish_dir, macos_dir)

    exe_name = detect_executable(published, project.stem, read_assembly_name(project))

    log("[mac] Generating Info.plist...")
    (contents_dir / "Info.plist").write_text(render_info_plist(exe_name, app_name), encoding="utf-8")

    install_icon(icon_path, resources_dir / f"{ICON_NAME}.icns")

    exe_path = macos_dir / exe_name
    if exe_path.is_file():
        ensure_executable(exe_path)

    log(f"App Bundle created successfully at: {bundle_root}")
    return bundle_root


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="appbundle",
        description="Publish a .NET project and wrap it in a macOS .app bundle.",
        epilog=(
            "Defaults: output-dir = current directory, app-name = project name, "
            f"icon-path = none, runtime = {DEFAULT_RUNTIME}"
        ),
    )
    parser.add_argument("project", nargs="?", help="path to the .csproj")
    parser.add_argument("output_dir", nargs="?", metavar="output-dir")
    parser.add_argument("app_name", nargs="?", metavar="app-name")
    parser.add_argument("icon_path", nargs="?", metavar="icon-path")
    parser.add_argument("runtime", nargs="?", default=DEFAULT_RUNTIME)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.project:
        parser.print_help()
        return 0

    try:
        project = Path(args.project).resolve()
        if not project.is_file():
            raise PackagingError(f"Project file not found at {project}")

        output_dir = Path(args.output_dir) if args.output_dir else Path.cwd()
        output_dir.mkdir(parents=True, exist_ok=True)
        app_name = args.app_name or project.stem
        icon_path = Path(args.icon_path) if args.icon_path else None

        assemble(project, output_dir, app_name, icon_path, args.runtime)
    except PackagingError as err:
        log(f"ERROR: {err}")
        return 1
    except Exception as err:  # pragma: no cover
        log(f"UNEXPECTED ERROR: {err}")
        log(traceback.format_exc())
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
