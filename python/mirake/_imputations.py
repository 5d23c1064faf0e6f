"""
Container for M imputed datasets.

Row ``i`` of every dataset must describe the same patient; the container
checks row counts, columns and (when given) the identifier sequence on
construction.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import narwhals as nw
import numpy as np

from ._errors import ConfigurationError, ImputationMismatchError, MissingColumnError

if TYPE_CHECKING:
    from narwhals.typing import IntoFrame

__all__ = ["Imputations", "check_consistency"]


def check_consistency(datasets: Sequence[Any], id_column: str | None = None) -> None:
    """
    Raise ``ImputationMismatchError`` unless all datasets line up row by row.

    Checks identical column names, identical row counts and, when
    ``id_column`` is present in the datasets, identical identifier sequences.
    """
    frames = [nw.from_native(df, eager_only=True) for df in datasets]
    if not frames:
        raise ConfigurationError("At least one imputed dataset is required")

    reference = frames[0]
    ref_columns = list(reference.columns)
    ref_rows = len(reference)
    ref_ids = None
    if id_column is not None and id_column in ref_columns:
        ref_ids = reference.get_column(id_column).to_numpy()

    for index, frame in enumerate(frames[1:], start=1):
        if list(frame.columns) != ref_columns:
            raise ImputationMismatchError(
                f"Imputation {index} has columns {list(frame.columns)}, "
                f"expected {ref_columns}"
            )
        if len(frame) != ref_rows:
            raise ImputationMismatchError(
                f"Imputation {index} has {len(frame)} rows, expected {ref_rows}"
            )
        if ref_ids is not None:
            ids = frame.get_column(id_column).to_numpy()
            if not np.array_equal(ids, ref_ids):
                raise ImputationMismatchError(
                    f"Imputation {index} lists '{id_column}' in a different order "
                    "or with different values than imputation 0"
                )


class Imputations(Sequence):
    """
    Ordered, validated collection of M complete datasets.

    Examples
    --------
    >>> imps = mirake.Imputations([df_1, df_2, df_3], id_column="caseid")
    >>> imps.complete(0)          # first dataset as a flat table
    >>> long = imps.to_long()     # all datasets with an ".imp" column
    >>> mirake.Imputations.from_long(long)
    """

    def __init__(self, datasets: Sequence[IntoFrame], *, id_column: str | None = None) -> None:
        datasets = tuple(datasets)
        check_consistency(datasets, id_column)
        self._datasets = datasets
        self.id_column = id_column

    @classmethod
    def from_long(
        cls,
        df: IntoFrame,
        *,
        imputation_column: str = ".imp",
        id_column: str | None = None,
        include_original: bool = False,
    ) -> Imputations:
        """
        Split a long table (one block per imputation) into an ``Imputations``.

        Imputation index 0 conventionally holds the incomplete original data
        and is skipped unless ``include_original`` is True.
        """
        df_nw = nw.from_native(df, eager_only=True)
        if imputation_column not in df_nw.columns:
            raise MissingColumnError(f"Imputation column '{imputation_column}' not found")

        values = sorted(df_nw.get_column(imputation_column).unique().to_list())
        if not include_original:
            values = [v for v in values if v != 0]

        datasets = [
            nw.to_native(df_nw.filter(nw.col(imputation_column) == v).drop(imputation_column))
            for v in values
        ]
        return cls(datasets, id_column=id_column)

    def __len__(self) -> int:
        return len(self._datasets)

    def __getitem__(self, index):
        return self._datasets[index]

    @property
    def m(self) -> int:
        return len(self._datasets)

    def complete(self, index: int) -> Any:
        """Dataset ``index`` (0-based) as a native flat table."""
        return self._datasets[index]

    def to_long(self, imputation_column: str = ".imp") -> Any:
        """All datasets stacked, with a 1-based imputation index column."""
        frames = [
            nw.from_native(df, eager_only=True).with_columns(
                nw.lit(m, dtype=nw.Int64).alias(imputation_column)
            )
            for m, df in enumerate(self._datasets, start=1)
        ]
        return nw.to_native(nw.concat(frames, how="vertical"))
