from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import reduce
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import petl as etl
import yaml

from tidyverbs.config import VerbOptions, resolve_options
from tidyverbs.errors import TidyUserError
from tidyverbs.models.grouping import GroupedTable, TableLike
from tidyverbs.models.table import Table
from tidyverbs.models.transforms import Transform, _transform_from_ir
from tidyverbs.schema import IR_VERSION, TableSchema, _normalize_ir, _transform_to_ir

logger = logging.getLogger(__name__)

PREVIEW_ROWS = 5


def pipe(value: Any, *functions: Callable[[Any], Any]) -> Any:
    """Left-to-right function application: ``pipe(t, f, g)`` is ``g(f(t))``."""
    for fn in functions:
        if not callable(fn):
            raise TidyUserError(
                "E_PIPE_STEP",
                f"pipe expects callables, got {fn!r}.",
                hint="Wrap verb calls with arguments in a lambda or functools.partial, "
                     "e.g. pipe(t, lambda x: filter(x, 'val > 15')).",
            )
    return reduce(lambda acc, fn: fn(acc), functions, value)


@dataclass
class PipelineContext:
    result: Optional[TableLike] = None
    checkpoints: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    tables: Dict[str, TableLike] = field(default_factory=dict)
    options: Optional[VerbOptions] = None
    schema: Optional[TableSchema] = None


def _checkpoint(i: int, step: Transform, table: TableLike) -> Dict[str, Any]:
    """Deterministic record of what a step produced: header, row count, bounded preview."""
    base = table.table if isinstance(table, GroupedTable) else table
    ptbl = base.to_petl()
    info: Dict[str, Any] = {
        "index": i,
        "kind": "transform",
        "op": step.op,
        "params": dict(step.params),
        "header": list(etl.header(ptbl)),
        "nrows": base.nrows,
        # header + up to PREVIEW_ROWS data rows
        "preview": list(etl.data(etl.head(ptbl, PREVIEW_ROWS))),
    }
    if isinstance(table, GroupedTable):
        info["groups"] = list(table.keys)
    return info


@dataclass
class Pipeline:
    """A linear sequence of Transform steps applied to one input table."""

    steps: List[Transform] = field(default_factory=list)
    options: Optional[VerbOptions] = None

    def then(self, step: Transform) -> "Pipeline":
        if not isinstance(step, Transform):
            raise TidyUserError(
                "E_PIPELINE_STEP",
                "Pipeline.then expects a Transform.",
                hint="Example: pipe.then(Transform('filter', params={'where': 'val > 15'})).",
            )
        step.validate()
        return Pipeline(self.steps + [step], self.options)

    def __str__(self) -> str:
        parts = [f"Pipeline({len(self.steps)} step(s))"]
        for s in self.steps:
            parts.append(f"  -> {s}")
        return "\n".join(parts)

    def run(self, table: TableLike, tables: Optional[Mapping[str, TableLike]] = None) -> PipelineContext:
        """Apply every step in order.

        `tables` supplies right-hand tables for join steps, by the name used in
        their ``right`` param. The returned context holds the result and one
        checkpoint per step.
        """
        if not isinstance(table, (Table, GroupedTable)):
            raise TidyUserError(
                "E_PIPELINE_INPUT",
                f"Pipeline.run expects a Table, got {type(table).__name__}.",
                hint="Convert petl tables first: Table.from_petl(tbl).",
            )
        ctx = PipelineContext(tables=dict(tables or {}), options=resolve_options(self.options))
        base = table.table if isinstance(table, GroupedTable) else table
        ctx.schema = base.schema()

        for i, step in enumerate(self.steps):
            logger.debug("pipeline step %d: %s", i, step)
            table = step.apply(table, context=ctx)
            # keep a best-effort running schema for UI and static checks
            ctx.schema = step.output_schema(ctx.schema)
            ctx.checkpoints.append(("step", _checkpoint(i, step, table)))
            logger.debug("pipeline step %d (%s) -> %d row(s)", i, step.op, ctx.checkpoints[-1][1]["nrows"])

        ctx.result = table
        return ctx

    def __call__(self, table: TableLike, tables: Optional[Mapping[str, TableLike]] = None) -> TableLike:
        return self.run(table, tables).result  # type: ignore[return-value]

    def schema(self, input_schema: TableSchema) -> Optional[TableSchema]:
        """Infer the output schema without running the pipeline.

        Returns None once a step's output cannot be determined statically
        (summarise, spread, joins).
        """
        sch: Optional[TableSchema] = input_schema
        for step in self.steps:
            if sch is None:
                return None
            sch = step.output_schema(sch)
        return sch

    def to_ir(self) -> Dict[str, Any]:
        """Serialize this pipeline to a YAML-friendly IR (dict)."""
        pipe_ir: Dict[str, Any] = {}
        if self.options is not None and self.options.to_mapping():
            pipe_ir["options"] = self.options.to_mapping()
        pipe_ir["steps"] = [{"transform": _transform_to_ir(s)} for s in self.steps]
        return {"tidyverbs": IR_VERSION, "pipeline": pipe_ir}

    @classmethod
    def from_ir(cls, ir: Dict[str, Any]) -> "Pipeline":
        """Deserialize a pipeline from IR (dict)."""
        ir = _normalize_ir(ir)
        pipe_ir = ir["pipeline"]
        opts = VerbOptions.from_mapping(pipe_ir["options"]) if pipe_ir["options"] else None
        out = Pipeline(options=opts)
        for item in pipe_ir["steps"]:
            out = out.then(_transform_from_ir(item["transform"]))
        return out

    def to_yaml(self, path: Optional[Union[str, Path]] = None) -> str:
        """Dump IR to YAML string. If `path` is provided, also write the file."""
        text = yaml.safe_dump(self.to_ir(), sort_keys=False)
        if path is not None:
            Path(path).write_text(text, encoding="utf-8")
        return text

    @classmethod
    def from_yaml(cls, text_or_path: Union[str, Path]) -> "Pipeline":
        """Load pipeline from YAML string or file path."""
        text = str(text_or_path)
        if isinstance(text_or_path, Path) or ("\n" not in text and text.endswith((".yaml", ".yml"))):
            p = Path(text_or_path)
            if p.exists():
                text = p.read_text(encoding="utf-8")
        try:
            ir = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise TidyUserError(
                "E_YAML_PARSE",
                f"Failed to parse YAML: {e}",
                hint="Check indentation and quoting.",
            ) from e
        return cls.from_ir(ir)

    def save_yaml(self, path: Union[str, Path]) -> None:
        """Write YAML IR to a file."""
        Path(path).write_text(self.to_yaml(), encoding="utf-8")

    @classmethod
    def load_yaml(cls, path: Union[str, Path]) -> "Pipeline":
        """Load YAML IR from a file."""
        p = Path(path)
        if not p.exists():
            raise TidyUserError(
                "E_YAML_PATH",
                f"Pipeline file not found: {str(p)!r}.",
                hint="Check the path, or use Pipeline.from_yaml(text) for inline YAML.",
            )
        return cls.from_yaml(p.read_text(encoding="utf-8"))
