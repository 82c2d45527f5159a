from tidyverbs.config import VerbOptions, get_options, options, set_options
from tidyverbs.errors import (
    DuplicateColumnName,
    DuplicateKeyError,
    InsufficientRows,
    InvalidColumnReference,
    JoinKeyMismatch,
    TidyUserError,
)
from tidyverbs.models.expr import Expr, aggregate, register_function
from tidyverbs.models.grouping import GroupedTable, count, group_by, summarise, summarize, ungroup
from tidyverbs.models.joins import anti_join, full_join, inner_join, join, left_join, right_join, semi_join
from tidyverbs.models.pipeline import Pipeline, PipelineContext, pipe
from tidyverbs.models.reshape import gather, spread
from tidyverbs.models.selectors import col_range, contains, ends_with, everything, exclude, matches, starts_with
from tidyverbs.models.table import Column, Table
from tidyverbs.models.transforms import Transform
from tidyverbs.models.verbs import (
    arrange,
    desc,
    distinct,
    drop,
    filter,
    head,
    mutate,
    relocate,
    rename,
    sample_frac,
    sample_n,
    select,
    slice,
    tail,
    transmute,
)
from tidyverbs.util import NA

__all__ = [
    "NA",
    "Column",
    "Table",
    "GroupedTable",
    "Expr",
    "aggregate",
    "register_function",
    "filter",
    "select",
    "drop",
    "distinct",
    "slice",
    "head",
    "tail",
    "sample_n",
    "sample_frac",
    "mutate",
    "transmute",
    "rename",
    "relocate",
    "arrange",
    "desc",
    "group_by",
    "ungroup",
    "summarise",
    "summarize",
    "count",
    "join",
    "inner_join",
    "left_join",
    "right_join",
    "full_join",
    "semi_join",
    "anti_join",
    "gather",
    "spread",
    "starts_with",
    "ends_with",
    "contains",
    "matches",
    "everything",
    "col_range",
    "exclude",
    "pipe",
    "Pipeline",
    "PipelineContext",
    "Transform",
    "VerbOptions",
    "get_options",
    "set_options",
    "options",
    "TidyUserError",
    "InvalidColumnReference",
    "DuplicateColumnName",
    "JoinKeyMismatch",
    "DuplicateKeyError",
    "InsufficientRows",
]
