"""Load and resolve EgressPolicy objects from YAML files."""

from __future__ import annotations

import importlib.resources
from pathlib import Path

import yaml

from devfence.errors import PolicyError
from devfence.policy.models import (
    DomainSpec,
    EgressPolicy,
    ProbeTargets,
    RangeProvider,
)

_PRESET_PREFIX = "preset:"
DEFAULT_PRESET = "preset:default"


def load_policy(path: str | Path, _chain: frozenset[str] = frozenset()) -> EgressPolicy:
    """Load a policy from a YAML file path."""
    path = Path(path)
    key = str(path.resolve())
    if key in _chain:
        raise PolicyError(f"Circular policy inheritance detected: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PolicyError(f"Cannot read policy {path}: {exc}") from exc
    return _build_policy(_parse_yaml(text), _chain | {key}, base_dir=path.parent)


def load_policy_from_string(text: str) -> EgressPolicy:
    """Parse a YAML string into an EgressPolicy, resolving inheritance."""
    return _build_policy(_parse_yaml(text), frozenset())


def load_default_policy(policy_dirs: list[Path] | None = None) -> EgressPolicy:
    """Load ``default.yaml`` from the first policy dir that has one, else the bundled preset."""
    for directory in policy_dirs or []:
        candidate = directory / "default.yaml"
        if candidate.is_file():
            return load_policy(candidate)
    return _load_ref(DEFAULT_PRESET, frozenset())


def _parse_yaml(text: str) -> dict:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PolicyError(f"Invalid policy YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise PolicyError("Policy YAML must be a mapping")
    return data


def _build_policy(
    data: dict, _chain: frozenset[str], base_dir: Path | None = None
) -> EgressPolicy:
    # _chain holds only the ancestors of this policy; siblings may share parents
    name = data.get("name", "unnamed")

    inherit_list = data.get("inherit", [])
    if isinstance(inherit_list, str):
        inherit_list = [inherit_list]

    specs: list[DomainSpec] = []
    providers: list[RangeProvider] = []
    for ref in inherit_list:
        parent = _load_ref(ref, _chain, base_dir)
        specs.extend(parent.specs)
        providers.extend(parent.providers)

    specs.extend(_parse_domains(data.get("domains", [])))
    specs.extend(_parse_domains(data.get("cidrs", [])))
    providers.extend(_parse_providers(data.get("providers", [])))

    return EgressPolicy(
        name=name,
        specs=_dedupe(specs),
        providers=_dedupe_providers(providers),
        ports=_parse_ports(data.get("ports", (80, 443))),
        allow_ssh=bool(data.get("allow_ssh", True)),
        probes=_parse_probes(data.get("probes", {})),
        description=data.get("description", ""),
        inherit=tuple(inherit_list),
    )


def _parse_domains(entries: list) -> list[DomainSpec]:
    if not isinstance(entries, list):
        raise PolicyError("'domains' and 'cidrs' must be lists of strings")
    return [DomainSpec.parse(str(e)) for e in entries if str(e).strip()]


def _parse_providers(entries: list) -> list[RangeProvider]:
    providers: list[RangeProvider] = []
    for p in entries:
        if not isinstance(p, dict) or "url" not in p:
            raise PolicyError(f"Range provider needs at least a 'url': {p!r}")
        keys = p.get("keys", ())
        if isinstance(keys, str):
            keys = (keys,)
        providers.append(
            RangeProvider(
                name=p.get("name", p["url"]),
                url=p["url"],
                keys=tuple(str(k) for k in keys),
            )
        )
    return providers


def _parse_ports(raw) -> tuple[int, ...]:
    if isinstance(raw, int):
        raw = (raw,)
    try:
        ports = tuple(sorted({int(p) for p in raw}))
    except (TypeError, ValueError) as exc:
        raise PolicyError(f"Invalid ports: {raw!r}") from exc
    for port in ports:
        if not 0 < port < 65536:
            raise PolicyError(f"Port out of range: {port}")
    return ports


def _parse_probes(data: dict) -> ProbeTargets:
    if not data:
        return ProbeTargets()
    defaults = ProbeTargets()
    allowed = data.get("allowed", defaults.allowed)
    if isinstance(allowed, str):
        allowed = (allowed,)
    return ProbeTargets(
        blocked=data.get("blocked", defaults.blocked),
        allowed=tuple(allowed),
    )


def _dedupe(specs: list[DomainSpec]) -> tuple[DomainSpec, ...]:
    # Keep the first occurrence so declaration order is preserved
    return tuple(dict.fromkeys(specs))


def _dedupe_providers(providers: list[RangeProvider]) -> tuple[RangeProvider, ...]:
    seen: dict[str, RangeProvider] = {}
    for p in providers:
        seen.setdefault(p.name, p)
    return tuple(seen.values())


def _load_ref(ref: str, _chain: frozenset[str], base_dir: Path | None = None) -> EgressPolicy:
    if ref.startswith(_PRESET_PREFIX):
        if ref in _chain:
            raise PolicyError(f"Circular policy inheritance detected: {ref}")
        preset_name = ref[len(_PRESET_PREFIX) :]
        return _load_preset(preset_name, _chain | {ref})
    # Treat as file path, relative to the including policy
    path = Path(ref)
    if base_dir is not None and not path.is_absolute():
        path = base_dir / path
    return load_policy(path, _chain=_chain)


def _load_preset(name: str, _chain: frozenset[str]) -> EgressPolicy:
    filename = f"{name}.yaml"
    pkg = importlib.resources.files("devfence.policy.presets")
    resource = pkg.joinpath(filename)
    if not resource.is_file():
        raise PolicyError(f"Unknown preset: {name}")
    text = resource.read_text(encoding="utf-8")
    return _build_policy(_parse_yaml(text), _chain)
