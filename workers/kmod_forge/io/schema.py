"""
Schema — Pydantic models for the module manifest and the build receipt.

Two documents:
  1. kmod.json           — input: which modules exist and how to build them.
  2. build_receipt.json  — output: one per module build, recording what ran,
                           what was reused, and how the build ended.

Runtime contract fields (present in every receipt):
  package_name, builder_version, profile_id, schema_version.
"""
from __future__ import annotations

import hashlib
import json
import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from kmod_forge import BUILDER_VERSION, PACKAGE_NAME, SCHEMA_VERSION
from kmod_forge.errors import ManifestError
from kmod_forge.policy.profile import OptProfile


_MODULE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


# =============================================================================
# Manifest
# =============================================================================

class ModuleSpec(BaseModel):
    """One loadable module: its embedded crate, shim and symbol inputs."""
    name: str
    crate_name: Optional[str] = None  # defaults to name with '-' → '_'
    source_root: str  # directory containing Cargo.toml
    target_triple: Optional[str] = None  # defaults to Settings.DEFAULT_TARGET_TRIPLE
    shim: str  # native shim: prebuilt .o or a .c to compile
    shim_cflags: List[str] = Field(default_factory=list)
    symbols: List[str] = Field(
        default_factory=list,
        description="Exported-symbol tables of sibling modules (Module.symvers or name lists)",
    )
    kernel_symvers: Optional[str] = None
    output: str  # path of the final .ko
    profile: OptProfile = OptProfile.RELEASE
    rustflags: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        if not _MODULE_NAME_RE.match(v):
            raise ValueError(f"invalid module name: {v!r}")
        return v

    @property
    def resolved_crate_name(self) -> str:
        return (self.crate_name or self.name).replace("-", "_")


class ModuleManifest(BaseModel):
    """Top-level kmod.json."""
    modules: List[ModuleSpec]

    @model_validator(mode="after")
    def _one_target_per_module(self) -> "ModuleManifest":
        names = [m.name for m in self.modules]
        dup_names = sorted({n for n in names if names.count(n) > 1})
        if dup_names:
            raise ValueError(f"duplicate module names: {', '.join(dup_names)}")
        outputs = [m.output for m in self.modules]
        dup_outputs = sorted({o for o in outputs if outputs.count(o) > 1})
        if dup_outputs:
            raise ValueError(f"duplicate module outputs: {', '.join(dup_outputs)}")
        return self

    def find_module(self, ref: str, base_dir: Path) -> ModuleSpec:
        """
        Return the module named *ref*, or the one whose output resolves to
        *ref* (relative to the working directory).
        """
        for m in self.modules:
            if m.name == ref:
                return m
        wanted = Path(ref).resolve()
        for m in self.modules:
            if (base_dir / m.output).resolve() == wanted:
                return m
        raise ManifestError(f"no module in manifest is named or produces {ref}")


def load_manifest(path: Path) -> Tuple[ModuleManifest, Path]:
    """
    Load and validate a manifest.

    Returns (manifest, base_dir); relative paths inside the manifest are
    relative to *base_dir*.
    """
    if not path.exists():
        raise ManifestError(f"manifest not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        manifest = ModuleManifest.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        raise ManifestError(f"invalid manifest {path}: {e}") from e
    return manifest, path.resolve().parent


# =============================================================================
# Receipt
# =============================================================================

class PhaseStatus(str, Enum):
    """Outcome of one pipeline phase."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    UP_TO_DATE = "UP_TO_DATE"
    SKIPPED = "SKIPPED"


class PhaseRecord(BaseModel):
    """One external command (or its cached reuse)."""
    name: str
    command: str = ""
    exit_code: int = -1
    stdout_path_rel: Optional[str] = None
    stderr_path_rel: Optional[str] = None
    duration_ms: int = 0
    status: PhaseStatus = PhaseStatus.SKIPPED

    @property
    def ran(self) -> bool:
        return self.status in (PhaseStatus.SUCCESS, PhaseStatus.FAILED, PhaseStatus.TIMEOUT)


class ToolchainIdentity(BaseModel):
    """Versions of the tools that produced the module."""
    cargo_version: str = "unknown"
    rustc_version: str = "unknown"
    ld_version: str = "unknown"
    cc_version: str = "unknown"


class ArtifactMeta(BaseModel):
    """A file produced by a stage."""
    path: str
    sha256: str
    size_bytes: int


class SymbolSummary(BaseModel):
    """Symbol facts of the finished module."""
    init_symbol: str
    exit_symbol: str
    external_refs: List[str] = Field(default_factory=list)
    retained_sections: List[str] = Field(default_factory=list)


class JobInfo(BaseModel):
    """Build-level metadata."""
    module: str
    target_triple: str
    opt_profile: str
    created_at: str  # ISO 8601
    finished_at: Optional[str] = None
    status: str = "BUILDING"  # BUILDING, SUCCESS, FAILED


class BuildReceipt(BaseModel):
    """
    Single authoritative receipt for one module build.

    One file per module build directory: build_receipt.json
    """
    package_name: str = PACKAGE_NAME
    builder_version: str = BUILDER_VERSION
    schema_version: str = SCHEMA_VERSION
    profile_id: str

    job: JobInfo
    toolchain: ToolchainIdentity = Field(default_factory=ToolchainIdentity)
    phases: List[PhaseRecord] = Field(default_factory=list)
    final_state: str = "NOT_BUILT"

    archive: Optional[ArtifactMeta] = None
    merged: Optional[ArtifactMeta] = None
    module: Optional[ArtifactMeta] = None
    symbols: Optional[SymbolSummary] = None

    error_type: Optional[str] = None
    error_message: Optional[str] = None

    def phase(self, name: str) -> Optional[PhaseRecord]:
        for p in self.phases:
            if p.name == name:
                return p
        return None


# =============================================================================
# Helpers
# =============================================================================

def hash_file(path: Path) -> str:
    """SHA-256 of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def artifact_meta(path: Path) -> ArtifactMeta:
    return ArtifactMeta(
        path=str(path),
        sha256=hash_file(path),
        size_bytes=path.stat().st_size,
    )


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()
