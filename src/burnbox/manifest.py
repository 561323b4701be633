"""Cargo manifest for the compute-server crate.

Backends are cargo features forwarding to ``burn``'s own backend features.
Exactly one is default; the others need ``--no-default-features``.
"""

from __future__ import annotations

from pathlib import Path

import tomlkit

from burnbox.config import Settings
from burnbox.server import BACKENDS, select_backend


def render_cargo_manifest(settings: Settings) -> str:
    ws = settings.workspace
    doc = tomlkit.document()

    package = tomlkit.table()
    package.add("name", ws.project)
    package.add("version", "0.1.0")
    package.add("edition", "2021")
    package.add("description", "Burn Remote Backend Server with GPU support")
    doc.add("package", package)

    features = tomlkit.table()
    features.add("default", [ws.default_backend])
    for backend in BACKENDS:
        features.add(backend, [f"burn/{backend}"])
    doc.add("features", features)

    burn = tomlkit.inline_table()
    burn.update({"version": ws.burn_version, "features": ["server"]})
    deps = tomlkit.table()
    deps.add("burn", burn)
    deps.add("cfg-if", "1.0")
    doc.add("dependencies", deps)

    return tomlkit.dumps(doc)


def read_backend_features(path: Path) -> tuple[list[str], str]:
    """Return ``(declared backend features, default backend)`` from a Cargo.toml.

    Raises BackendSelectionError when the default set does not name exactly
    one backend (e.g. after a manual edit).
    """
    doc = tomlkit.parse(path.read_text())
    features = doc.get("features", {})
    declared = [name for name in features if name in BACKENDS]
    default = select_backend(features.get("default", []))
    return declared, default


def project_backend(settings: Settings) -> str:
    """Default backend the project's Cargo.toml declares.

    The manifest is user-editable, so once it exists it wins over
    ``workspace.default_backend``.
    """
    path = settings.project_dir / "Cargo.toml"
    if not path.exists():
        return settings.workspace.default_backend
    _, default = read_backend_features(path)
    return default
