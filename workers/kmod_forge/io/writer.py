"""
Writer — serialize the build receipt.

Filesystem layout per module build:
    <build_root>/<module>/<triple>/build_receipt.json
"""
import json
from pathlib import Path

from kmod_forge.io.schema import BuildReceipt


def write_receipt(receipt: BuildReceipt, path: Path) -> Path:
    """
    Write *receipt* to *path* (via a temp file, so readers never see half a
    receipt).  Creates the parent directory if needed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(
        json.dumps(
            receipt.model_dump(mode="json"),
            indent=2,
            sort_keys=True,
        )
        + "\n"
    )
    tmp.replace(path)
    return path


def read_receipt(path: Path) -> BuildReceipt:
    return BuildReceipt.model_validate_json(path.read_text())
