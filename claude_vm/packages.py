from __future__ import annotations

import re
import sys
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from claude_vm.errors import ValidationError

APT_ENV = "sudo DEBIAN_FRONTEND=noninteractive"

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9.+-]*$")
_ARCH_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")
_VERSION_RE = re.compile(r"^[A-Za-z0-9.+~:*-]+$")
KNOWN_ARCHES = frozenset(
    {"all", "amd64", "arm64", "armel", "armhf", "i386", "mips64el", "ppc64el", "riscv64", "s390x"}
)


@dataclass(frozen=True)
class PackageSpec:
    name: str
    version: str = ""
    arch: str = ""

    @property
    def key(self) -> str:
        return f"{self.name}:{self.arch}" if self.arch else self.name

    def to_apt(self) -> str:
        text = self.key
        if self.version:
            text += f"={self.version}"
        return text


def parse_package_spec(spec: str) -> PackageSpec:
    """Parse ``name[:arch][=version]``; ``name=version:arch`` is accepted too.

    Only characters apt itself allows are accepted, so a spec can be
    interpolated into the install command line without quoting surprises.
    """
    if not isinstance(spec, str) or not spec:
        raise ValidationError("Error: Package name cannot be empty")
    if not spec[0].isascii() or not spec[0].isalnum():
        raise ValidationError(f"Error: Invalid package name '{spec}': must start with a letter or digit")

    head, _, version = spec.partition("=")
    name, _, arch = head.partition(":")
    if version and not arch and ":" in version:
        prefix, _, suffix = version.rpartition(":")
        if suffix in KNOWN_ARCHES:
            version, arch = prefix, suffix

    if not _NAME_RE.match(name):
        raise ValidationError(
            f"Error: Invalid package name '{spec}'. Package names must contain only "
            "lowercase letters, digits, and '.', '-', '+'"
        )
    if arch and not _ARCH_RE.match(arch):
        raise ValidationError(f"Error: Invalid architecture qualifier in package '{spec}'")
    if "=" in spec and (not version or not _VERSION_RE.match(version)):
        raise ValidationError(f"Error: Invalid version constraint in package '{spec}'")
    return PackageSpec(name=name, version=version, arch=arch)


@dataclass
class PackageBatch:
    packages: list[PackageSpec] = field(default_factory=list)
    repo_setups: list[tuple[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def names(self) -> list[str]:
        return [package.to_apt() for package in self.packages]

    def is_empty(self) -> bool:
        return not self.packages and not self.repo_setups

    def install_script(self) -> str:
        """Guest script: every repository setup, one metadata refresh, one install."""
        lines = ["set -e"]
        for capability_id, script in self.repo_setups:
            lines.append(f"echo '  repository setup: {capability_id}'")
            lines.append("(")
            lines.append(script.rstrip("\n"))
            lines.append(")")
        lines.append(f"{APT_ENV} apt-get update -q")
        if self.packages:
            lines.append(f"{APT_ENV} apt-get install -y -q " + " ".join(self.names))
        return "\n".join(lines) + "\n"


def aggregate_packages(
    capabilities: Sequence[Any],
    extra: Iterable[str] = (),
    *,
    base: Iterable[str] = (),
) -> PackageBatch:
    """Merge declared packages of ordered capabilities into one batch.

    The first declaration of a package keeps its position and constraint. A
    later declaration with a different constraint is dropped with a warning.
    ``base`` is merged before every capability and ``extra`` (user-configured
    packages) after them.
    """
    batch = PackageBatch()
    seen: dict[str, tuple[PackageSpec, str]] = {}

    def merge(spec_text: str, origin: str) -> None:
        spec = parse_package_spec(spec_text)
        previous = seen.get(spec.key)
        if previous is None:
            seen[spec.key] = (spec, origin)
            batch.packages.append(spec)
            return
        kept, kept_origin = previous
        if kept.version != spec.version:
            batch.warnings.append(
                f"Warning: package '{spec.to_apt()}' from {origin} conflicts with "
                f"'{kept.to_apt()}' from {kept_origin}; keeping '{kept.to_apt()}'"
            )

    for spec_text in base:
        merge(spec_text, "base system")
    for capability in capabilities:
        for spec_text in capability.packages:
            merge(spec_text, f"capability '{capability.id}'")
        if capability.setup_script.strip():
            batch.repo_setups.append((capability.id, capability.setup_script))
    for spec_text in extra:
        merge(spec_text, "configuration")

    for warning in batch.warnings:
        print(warning, file=sys.stderr)
    return batch
