from __future__ import annotations

import contextlib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union

import yaml

from tidyverbs.errors import TidyUserError


@dataclass(frozen=True)
class VerbOptions:
    """Edge-case policies shared by the verbs.

    Every verb accepts ``options=`` to override the process defaults for one call.
    """

    # slice: positions past the end are dropped ("drop") or rejected ("error")
    slice_out_of_range: str = "drop"
    # spread: a repeated key inside one id group raises ("error") or keeps the last value ("last")
    spread_duplicates: str = "error"
    join_suffixes: Tuple[str, str] = (".x", ".y")
    strict_types: bool = True
    strict_expressions: bool = True
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.slice_out_of_range not in {"drop", "error"}:
            raise TidyUserError(
                "E_OPTIONS",
                "slice_out_of_range must be one of: 'drop', 'error'.",
                hint="Example: VerbOptions(slice_out_of_range='error')",
            )
        if self.spread_duplicates not in {"error", "last"}:
            raise TidyUserError(
                "E_OPTIONS",
                "spread_duplicates must be one of: 'error', 'last'.",
                hint="Example: VerbOptions(spread_duplicates='last')",
            )
        suffixes = tuple(self.join_suffixes)
        if len(suffixes) != 2 or not all(isinstance(s, str) and s for s in suffixes) or suffixes[0] == suffixes[1]:
            raise TidyUserError(
                "E_OPTIONS",
                "join_suffixes must be two different non-empty strings.",
                hint="Example: VerbOptions(join_suffixes=('.left', '.right'))",
            )
        object.__setattr__(self, "join_suffixes", suffixes)
        for name in ("strict_types", "strict_expressions"):
            if not isinstance(getattr(self, name), bool):
                raise TidyUserError(
                    "E_OPTIONS",
                    f"{name} must be a boolean.",
                    hint=f"Example: VerbOptions({name}=False)",
                )
        if self.seed is not None and (isinstance(self.seed, bool) or not isinstance(self.seed, int)):
            raise TidyUserError(
                "E_OPTIONS",
                "seed must be an integer or None.",
                hint="Example: VerbOptions(seed=42)",
            )

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "VerbOptions":
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise TidyUserError(
                "E_OPTIONS",
                "Options must be a mapping.",
                hint="Example: {slice_out_of_range: error, seed: 1}",
            )
        known = {f.name for f in fields(cls)}
        unknown = sorted(k for k in data if k not in known)
        if unknown:
            raise TidyUserError(
                "E_OPTIONS",
                f"Unknown option(s): {unknown}.",
                hint="Known options: " + ", ".join(sorted(known)),
            )
        kwargs = dict(data)
        if "join_suffixes" in kwargs and isinstance(kwargs["join_suffixes"], list):
            kwargs["join_suffixes"] = tuple(kwargs["join_suffixes"])
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, text_or_path: Union[str, Path]) -> "VerbOptions":
        """Load options from a YAML string or file path."""
        p = Path(text_or_path)
        try:
            is_file = p.is_file()
        except OSError:
            is_file = False
        text = p.read_text(encoding="utf-8") if is_file else str(text_or_path)
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise TidyUserError(
                "E_YAML_PARSE",
                f"Failed to parse options YAML: {e}",
                hint="Check indentation and quoting.",
            ) from e
        return cls.from_mapping(data)

    def to_mapping(self) -> Dict[str, Any]:
        """Non-default options only, in a YAML-friendly shape."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            v = getattr(self, f.name)
            if v != f.default:
                out[f.name] = list(v) if isinstance(v, tuple) else v
        return out


_DEFAULT_OPTIONS = VerbOptions()


def get_options() -> VerbOptions:
    return _DEFAULT_OPTIONS


def set_options(opts: Optional[VerbOptions] = None, **changes: Any) -> VerbOptions:
    """Replace the process-wide defaults; returns the previous value."""
    global _DEFAULT_OPTIONS
    previous = _DEFAULT_OPTIONS
    base = opts if opts is not None else previous
    _DEFAULT_OPTIONS = replace(base, **changes) if changes else base
    return previous


@contextlib.contextmanager
def options(**changes: Any) -> Iterator[VerbOptions]:
    """Temporarily change the defaults: ``with options(seed=1): ...``."""
    previous = set_options(**changes)
    try:
        yield _DEFAULT_OPTIONS
    finally:
        set_options(previous)


def resolve_options(opts: Optional[VerbOptions]) -> VerbOptions:
    return opts if opts is not None else _DEFAULT_OPTIONS
