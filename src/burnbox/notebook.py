"""Example notebook for the Rust kernel.

Built with ``nbformat`` so the file is always a valid v4 notebook.
"""

from __future__ import annotations

from pathlib import Path

import nbformat
from nbformat.v4 import new_code_cell, new_markdown_cell, new_notebook

from burnbox.config import Settings
from burnbox.server import BACKEND_TYPES

NOTEBOOK_NAME = "burn_example.ipynb"

RUST_KERNELSPEC = {
    "display_name": "Rust",
    "language": "rust",
    "name": "rust",
}


def build_example_notebook(burn_version: str, backend: str) -> nbformat.NotebookNode:
    """Dependency cell + a tensor allocated on ``backend`` and printed."""
    backend_type = BACKEND_TYPES[backend]
    nb = new_notebook()
    nb.metadata["kernelspec"] = dict(RUST_KERNELSPEC)
    nb.cells.append(
        new_markdown_cell(
            source=(
                "# Burn GPU Development with Rust\n"
                "\n"
                f"This notebook demonstrates using Burn with {backend_type} in Jupyter.\n"
                "\n"
                "**Note**: the first cell takes a while to compile; "
                "sccache speeds up the ones after it."
            )
        )
    )
    nb.cells.append(
        new_code_cell(
            source=f':dep burn = {{ version = "{burn_version}", features = ["{backend}"] }}'
        )
    )
    nb.cells.append(
        new_code_cell(
            source=(
                "use burn::tensor::Tensor;\n"
                f"use burn::backend::{backend_type};\n"
                "\n"
                f"type Backend = {backend_type};\n"
                "\n"
                "let device = Default::default();\n"
                "let tensor: Tensor<Backend, 2> = Tensor::ones([3, 3], &device);\n"
                f'println!("Tensor on {backend_type}:\\n{{:?}}", tensor);'
            )
        )
    )
    return nb


def example_notebook_path(settings: Settings) -> Path:
    return settings.notebooks_dir / NOTEBOOK_NAME


def load_notebook(path: Path) -> nbformat.NotebookNode:
    return nbformat.read(str(path), as_version=4)


def save_notebook(nb: nbformat.NotebookNode, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    nbformat.write(nb, str(path))
