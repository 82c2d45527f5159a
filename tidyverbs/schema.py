from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

from tidyverbs.errors import TidyUserError

if TYPE_CHECKING:  # pragma: no cover
    from tidyverbs.models.transforms import Transform

# frictionless-style table schema: {"fields": [{"name": ..., "type": ...}, ...]}
TableSchema = Dict[str, Any]

IR_VERSION = 0


def _schema_field_names(schema: Optional[TableSchema]) -> List[str]:
    if not schema or not isinstance(schema, dict):
        return []
    fields = schema.get("fields")
    if not isinstance(fields, list):
        return []
    out: List[str] = []
    for f in fields:
        if isinstance(f, dict) and isinstance(f.get("name"), str):
            out.append(f["name"])
    return out


def _schema_fields_by_name(schema: Optional[TableSchema]) -> Dict[str, Dict[str, Any]]:
    if not schema or not isinstance(schema.get("fields"), list):
        return {}
    return {f["name"]: dict(f) for f in schema["fields"] if isinstance(f, dict) and isinstance(f.get("name"), str)}


def _schema_from_fields(fields: List[Dict[str, Any]]) -> TableSchema:
    return {"fields": fields}


def _any_field(name: str, type_: str = "any") -> Dict[str, Any]:
    return {"name": name, "type": type_}


def _transform_to_ir(t: "Transform") -> Dict[str, Any]:
    d: Dict[str, Any] = {"op": t.op}
    if t.params:
        params: Dict[str, Any] = {}
        for k, v in t.params.items():
            if not _is_plain(v):
                raise TidyUserError(
                    "E_IR_PARAMS",
                    f"Transform '{t.op}' param {k!r} holds a {type(v).__name__}, which cannot be serialized.",
                    hint="Use strings, numbers, booleans, lists and mappings only. "
                         "For joins, refer to the right-hand table by name and pass it to run(tables=...).",
                )
            params[k] = _plain(v)
        d["params"] = params
    return d


def _is_plain(v: Any) -> bool:
    if v is None or isinstance(v, (str, int, float, bool)):
        return True
    if isinstance(v, (list, tuple)):
        return all(_is_plain(x) for x in v)
    if isinstance(v, dict):
        return all(isinstance(k, str) and _is_plain(x) for k, x in v.items())
    return False


def _plain(v: Any) -> Any:
    # YAML safe_dump has no tuple type
    if isinstance(v, (list, tuple)):
        return [_plain(x) for x in v]
    if isinstance(v, dict):
        return {k: _plain(x) for k, x in v.items()}
    return v


def _normalize_ir(ir: Any) -> Dict[str, Any]:
    """Normalize IR structure.

    Guarantees:
      - returns a dict with keys: tidyverbs, pipeline
      - pipeline.options is a mapping (possibly empty)
      - pipeline.steps is a list of {transform: {op, params}} mappings
      - missing transform params become {}
    """
    if not isinstance(ir, dict):
        raise TidyUserError(
            "E_IR_ROOT",
            "IR must be a mapping at the root.",
            hint="Expected keys: tidyverbs, pipeline.",
        )

    ir2: Dict[str, Any] = dict(ir)
    if ir2.get("tidyverbs") is None:
        ir2["tidyverbs"] = IR_VERSION
    version = ir2.get("tidyverbs")
    if version != IR_VERSION:
        raise TidyUserError(
            "E_IR_VERSION",
            f"Unsupported IR version: {version!r}.",
            hint=f"Supported: tidyverbs: {IR_VERSION}",
        )

    pipe = ir2.get("pipeline")
    if not isinstance(pipe, dict):
        raise TidyUserError(
            "E_IR_PIPELINE",
            "IR requires a 'pipeline' mapping.",
            hint="Example: {tidyverbs: 0, pipeline: {steps: [...]}}",
        )
    pipe2: Dict[str, Any] = dict(pipe)

    opts = pipe2.get("options")
    if opts is None:
        opts = {}
    if not isinstance(opts, dict):
        raise TidyUserError(
            "E_IR_OPTIONS",
            "IR pipeline.options must be a mapping.",
            hint="Example: options: {slice_out_of_range: error}",
        )
    pipe2["options"] = dict(opts)

    steps = pipe2.get("steps")
    if steps is None:
        steps = []
    if not isinstance(steps, list):
        raise TidyUserError(
            "E_IR_STEPS",
            "IR pipeline.steps must be a list.",
            hint="Example: steps: [{transform: {op: filter, params: {where: 'val > 15'}}}]",
        )

    norm_steps: List[Dict[str, Any]] = []
    for i, item in enumerate(steps):
        if not isinstance(item, dict) or len(item) != 1 or "transform" not in item:
            raise TidyUserError(
                "E_IR_STEP",
                f"IR step #{i} must be a mapping with exactly one key: 'transform'.",
                hint=str(item),
            )
        t = item["transform"]
        if not isinstance(t, dict):
            raise TidyUserError(
                "E_IR_TRANSFORM",
                "IR transform must be a mapping.",
                hint="Example: - transform: {op: select, params: {columns: [a, b]}}",
            )
        t2: Dict[str, Any] = dict(t)
        params = t2.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise TidyUserError(
                "E_IR_TRANSFORM",
                "IR transform 'params' must be a mapping.",
                hint="Example: params: {where: \"depth >= 30\"}",
            )
        t2["params"] = dict(params)
        norm_steps.append({"transform": t2})

    pipe2["steps"] = norm_steps
    return {"tidyverbs": IR_VERSION, "pipeline": pipe2}
