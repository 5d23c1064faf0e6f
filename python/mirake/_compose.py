"""
Weight composition and propagation back onto the full record set.

Weights travel as numpy arrays aligned with the input row order and are
appended positionally, so no join or re-sort is ever needed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import narwhals as nw
import numpy as np
from narwhals.typing import IntoFrameT

from ._errors import ConfigurationError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

__all__ = ["compose_weights", "attach_weights", "ensure_id_column"]


def compose_weights(
    base_weights: ArrayLike,
    eligible: ArrayLike,
    raking: Any | None = None,
) -> NDArray[np.float64]:
    """
    Final weight per record.

    Without raking (``raking`` is None or a pass-through result) the final
    weight is a copy of the base weight. With raking it is the raking weight
    for eligible records and 0 for every other record.
    """
    base = np.asarray(base_weights, dtype=np.float64)
    if raking is None or not raking.performed:
        return base.copy()
    mask = np.asarray(eligible, dtype=bool)
    return np.where(mask, np.asarray(raking.weights, dtype=np.float64), 0.0)


def ensure_id_column(frame: IntoFrameT, id_column: str) -> IntoFrameT:
    """
    Add a 1-based integer identifier column unless one is already present.

    An existing identifier must be complete and unique.
    """
    df_nw = nw.from_native(frame, eager_only=True)
    if id_column in df_nw.columns:
        ids = df_nw.get_column(id_column)
        if ids.null_count() > 0:
            raise ConfigurationError(f"Identifier column '{id_column}' has missing values")
        if ids.n_unique() != len(df_nw):
            raise ConfigurationError(f"Identifier column '{id_column}' is not unique")
        return nw.to_native(df_nw)
    ids = nw.new_series(
        id_column,
        np.arange(1, len(df_nw) + 1, dtype=np.int64),
        dtype=nw.Int64,
        backend=nw.get_native_namespace(df_nw),
    )
    return nw.to_native(df_nw.with_columns(ids))


def attach_weights(
    frame: IntoFrameT,
    columns: dict[str, ArrayLike],
    *,
    null_if_negative: tuple[str, ...] = (),
) -> IntoFrameT:
    """
    Return ``frame`` with ``columns`` appended in row order.

    Existing columns are never overwritten. Integer columns named in
    ``null_if_negative`` store negative codes (e.g. subclass -1) as null.
    """
    df_nw = nw.from_native(frame, eager_only=True)
    n_rows = len(df_nw)
    backend = nw.get_native_namespace(df_nw)

    clashes = set(columns) & set(df_nw.columns)
    if clashes:
        raise ConfigurationError(f"Columns already present in the record set: {sorted(clashes)}")

    new = []
    for name, values in columns.items():
        arr = np.asarray(values)
        if arr.shape != (n_rows,):
            raise ConfigurationError(
                f"Column '{name}' has shape {arr.shape}, expected ({n_rows},)"
            )
        dtype = nw.Int64 if arr.dtype.kind in "iu" else nw.Float64
        new.append(nw.new_series(name, arr, dtype=dtype, backend=backend))

    result = df_nw.with_columns(*new)
    if null_if_negative:
        result = result.with_columns(
            *[nw.when(nw.col(c) >= 0).then(nw.col(c)).alias(c) for c in null_if_negative]
        )
    return nw.to_native(result)
