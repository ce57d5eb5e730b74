"""
Long-format abundance table: one row per (gene, sample) pair.

AbundanceTable couples raw counts with the sample annotations (treatment,
cell line, ...) and gene annotations (symbol, biotype, ...) that every
downstream stage needs, and with the derived columns those stages produce
(low-abundance flags, scaled counts, principal components, test statistics).

Biological Context:
    A count matrix is naturally wide (genes × samples), but most questions
    asked of it mix both axes: "which treated samples express this gene",
    "colour the PCA by cell line", "plot scaled counts of the top hits by
    group". Keeping the data long, with sample and gene attributes repeated
    on every row, lets each of those be a filter or group-by.

Engineering Design:
    - Explicit schema: the table records which columns are sample-level and
      which are gene-level. Everything else is an observation column.
    - Typed joins: new columns arrive only through join_samples,
      join_features or with_observation, each of which checks key
      uniqueness and coverage before merging.
    - Broadcast consistency: a sample-level column must hold one value per
      sample (and symmetrically for genes). Projections verify this.
    - Immutable: operations return new instances.

Examples:
    >>> import pandas as pd
    >>> from tidyrna.core.table import AbundanceTable
    >>>
    >>> counts = pd.DataFrame(
    ...     {"s1": [50, 5], "s2": [60, 4]}, index=["geneA", "geneB"]
    ... )
    >>> samples = pd.DataFrame({"group": ["treated", "untreated"]}, index=["s1", "s2"])
    >>> table = AbundanceTable.from_matrix(counts, sample_metadata=samples)
    >>> table.shape
    (4, 4)
    >>> table.pivot_sample()
      sample      group
    0     s1    treated
    1     s2  untreated
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from tidyrna.core.errors import (
    BroadcastConsistencyError,
    IdentifierCollisionError,
    InputShapeError,
)

logger = logging.getLogger(__name__)

__all__ = ['AbundanceTable', 'strip_prefix', 'replace_pattern']


def strip_prefix(prefix: str) -> Callable[[str], str]:
    """
    Build a rewrite that removes a literal prefix from identifiers.

    Identifiers without the prefix are returned unchanged, so applying the
    rewrite twice is the same as applying it once.

    Examples:
        >>> rewrite = strip_prefix("SRR")
        >>> rewrite("SRR1039508"), rewrite("1039508")
        ('1039508', '1039508')
    """
    def _rewrite(identifier: str) -> str:
        return identifier.removeprefix(prefix)

    _rewrite.__name__ = f"strip_prefix({prefix!r})"
    return _rewrite


def replace_pattern(pattern: str, repl: str) -> Callable[[str], str]:
    """Build a regular-expression rewrite (``re.sub`` semantics)."""
    import re

    compiled = re.compile(pattern)

    def _rewrite(identifier: str) -> str:
        return compiled.sub(repl, identifier)

    _rewrite.__name__ = f"replace_pattern({pattern!r}, {repl!r})"
    return _rewrite


class AbundanceTable:
    """
    Immutable long-format table of counts plus sample/gene annotations.

    Attributes:
        data: Long DataFrame, one row per feature × sample
        feature_column: Name of the gene identifier column
        sample_column: Name of the sample identifier column
        count_column: Name of the raw count column
        sample_columns: Columns holding one value per sample
        feature_columns: Columns holding one value per gene

    Shape Invariants:
        - len(data) == n_features * n_samples
        - each (feature, sample) pair occurs exactly once
        - registered columns exist and are not key columns
    """

    def __init__(
        self,
        data: pd.DataFrame,
        feature_column: str = "feature",
        sample_column: str = "sample",
        count_column: str = "count",
        sample_columns: Sequence[str] = (),
        feature_columns: Sequence[str] = (),
    ):
        """
        Initialize AbundanceTable with validation.

        Most callers should use :meth:`from_matrix` instead.

        Raises:
            TypeError: If data is not a DataFrame
            InputShapeError: If key columns are missing, keys are duplicated,
                or the rows do not form a complete gene × sample grid
        """
        if not isinstance(data, pd.DataFrame):
            raise TypeError(f"data must be pd.DataFrame, got {type(data)}")

        keys = [feature_column, sample_column, count_column]
        missing = [c for c in keys if c not in data.columns]
        if missing:
            raise InputShapeError(f"Key columns missing from table: {missing}")

        sample_columns = list(sample_columns)
        feature_columns = list(feature_columns)
        for registry, kind in ((sample_columns, "sample"), (feature_columns, "feature")):
            absent = [c for c in registry if c not in data.columns]
            if absent:
                raise InputShapeError(f"Registered {kind} columns not in table: {absent}")
            reserved = [c for c in registry if c in keys]
            if reserved:
                raise InputShapeError(f"Key columns cannot be registered as {kind} columns: {reserved}")
        overlap = set(sample_columns) & set(feature_columns)
        if overlap:
            raise InputShapeError(f"Columns registered as both sample and feature level: {sorted(overlap)}")

        duplicated = data.duplicated(subset=[feature_column, sample_column])
        if duplicated.any():
            examples = data.loc[duplicated, [feature_column, sample_column]].head(5)
            raise InputShapeError(
                f"{int(duplicated.sum())} duplicated (feature, sample) pairs, e.g. "
                f"{list(examples.itertuples(index=False, name=None))}"
            )

        feature_ids = pd.Index(pd.unique(data[feature_column]), name=feature_column)
        sample_ids = pd.Index(pd.unique(data[sample_column]), name=sample_column)
        if len(data) != len(feature_ids) * len(sample_ids):
            raise InputShapeError(
                f"Table has {len(data)} rows but {len(feature_ids)} features × "
                f"{len(sample_ids)} samples = {len(feature_ids) * len(sample_ids)}; "
                "every gene must be observed in every sample"
            )

        self._data = data.reset_index(drop=True)
        self._feature_column = feature_column
        self._sample_column = sample_column
        self._count_column = count_column
        self._sample_columns = sample_columns
        self._feature_columns = feature_columns
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_matrix(
        cls,
        counts: pd.DataFrame,
        sample_metadata: Optional[pd.DataFrame] = None,
        feature_metadata: Optional[pd.DataFrame] = None,
        feature_column: str = "feature",
        sample_column: str = "sample",
        count_column: str = "count",
    ) -> AbundanceTable:
        """
        Reshape a gene × sample count matrix into a long abundance table.

        Args:
            counts: Count matrix, genes as index, samples as columns
            sample_metadata: Annotations indexed by sample id. Must cover
                exactly the samples of ``counts``.
            feature_metadata: Annotations indexed by gene id. Must cover
                exactly the genes of ``counts``.
            feature_column: Name for the gene identifier column
            sample_column: Name for the sample identifier column
            count_column: Name for the count column

        Returns:
            AbundanceTable with n_genes × n_samples rows, ordered gene-major

        Raises:
            TypeError: If counts is not a DataFrame
            InputShapeError: Duplicate ids, negative/missing/non-numeric
                counts, metadata that does not match the matrix, or metadata
                columns that clash with key column names

        Notes:
            Genes and samples with zero total counts are kept. Non-integer
            counts are accepted with a warning (e.g. estimated counts from
            pseudo-aligners).
        """
        if not isinstance(counts, pd.DataFrame):
            raise TypeError(f"counts must be pd.DataFrame, got {type(counts)}")

        counts = counts.copy()
        counts.index = counts.index.astype(str)
        counts.columns = counts.columns.astype(str)

        _check_unique(counts.index, "gene")
        _check_unique(counts.columns, "sample")

        try:
            values = counts.to_numpy(dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InputShapeError(f"Count matrix contains non-numeric values: {e}") from e

        if np.isnan(values).any():
            n_missing = int(np.isnan(values).sum())
            raise InputShapeError(f"Count matrix contains {n_missing} missing values")
        if (values < 0).any():
            raise InputShapeError("Count matrix contains negative values")

        integral = np.all(values == np.round(values))
        if not integral:
            logger.warning("Count matrix contains non-integer values; keeping them as floats")

        n_features, n_samples = values.shape
        feature_ids = counts.index
        sample_ids = counts.columns

        data = pd.DataFrame({
            feature_column: np.repeat(feature_ids.to_numpy(), n_samples),
            sample_column: np.tile(sample_ids.to_numpy(), n_features),
            count_column: values.ravel().astype(np.int64) if integral else values.ravel(),
        })

        sample_columns: list[str] = []
        if sample_metadata is not None:
            aligned = _align_metadata(
                sample_metadata, sample_ids, "sample",
                reserved=(feature_column, sample_column, count_column),
            )
            data = data.join(aligned, on=sample_column)
            sample_columns = list(aligned.columns)

        feature_columns: list[str] = []
        if feature_metadata is not None:
            aligned = _align_metadata(
                feature_metadata, feature_ids, "gene",
                reserved=(feature_column, sample_column, count_column, *sample_columns),
            )
            data = data.join(aligned, on=feature_column)
            feature_columns = list(aligned.columns)

        logger.info(f"Built abundance table: {n_features} genes × {n_samples} samples "
                    f"({len(data)} rows)")

        return cls(
            data,
            feature_column=feature_column,
            sample_column=sample_column,
            count_column=count_column,
            sample_columns=sample_columns,
            feature_columns=feature_columns,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def data(self) -> pd.DataFrame:
        """Long DataFrame (one row per gene × sample)."""
        return self._data

    @property
    def feature_column(self) -> str:
        return self._feature_column

    @property
    def sample_column(self) -> str:
        return self._sample_column

    @property
    def count_column(self) -> str:
        return self._count_column

    @property
    def feature_ids(self) -> pd.Index:
        """Gene identifiers in table order."""
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        """Sample identifiers in table order."""
        return self._sample_ids

    @property
    def sample_columns(self) -> list[str]:
        """Columns holding one value per sample."""
        return list(self._sample_columns)

    @property
    def feature_columns(self) -> list[str]:
        """Columns holding one value per gene."""
        return list(self._feature_columns)

    @property
    def observation_columns(self) -> list[str]:
        """Columns varying per gene × sample (count column included)."""
        keyed = {self._feature_column, self._sample_column,
                 *self._sample_columns, *self._feature_columns}
        return [c for c in self._data.columns if c not in keyed]

    @property
    def n_features(self) -> int:
        return len(self._feature_ids)

    @property
    def n_samples(self) -> int:
        return len(self._sample_ids)

    @property
    def shape(self) -> tuple[int, int]:
        """Shape of the long DataFrame (rows, columns)."""
        return self._data.shape

    @property
    def sample_metadata(self) -> pd.DataFrame:
        """Sample-level columns indexed by sample id (unverified)."""
        frame = self._data.drop_duplicates(subset=[self._sample_column])
        frame = frame.set_index(self._sample_column)[self._sample_columns]
        return frame.reindex(self._sample_ids)

    @property
    def feature_metadata(self) -> pd.DataFrame:
        """Gene-level columns indexed by gene id (unverified)."""
        frame = self._data.drop_duplicates(subset=[self._feature_column])
        frame = frame.set_index(self._feature_column)[self._feature_columns]
        return frame.reindex(self._feature_ids)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, column: str) -> bool:
        return column in self._data.columns

    # ------------------------------------------------------------------
    # Wide views
    # ------------------------------------------------------------------

    def to_matrix(self, column: Optional[str] = None) -> pd.DataFrame:
        """
        Pivot an observation column to a gene × sample matrix.

        Args:
            column: Observation column to pivot (default: count column)

        Returns:
            DataFrame indexed by gene id with one column per sample, in
            table order
        """
        column = column or self._count_column
        if column not in self._data.columns:
            raise KeyError(f"Column '{column}' not in table")
        wide = self._data.pivot(
            index=self._feature_column, columns=self._sample_column, values=column
        )
        wide = wide.reindex(index=self._feature_ids, columns=self._sample_ids)
        wide.columns.name = None
        return wide

    # ------------------------------------------------------------------
    # Typed joins
    # ------------------------------------------------------------------

    def join_samples(self, frame: pd.DataFrame | pd.Series, overwrite: bool = False) -> AbundanceTable:
        """
        Broadcast per-sample values onto every row of each sample.

        Args:
            frame: Values indexed by sample id (unique, covering all samples)
            overwrite: Replace existing sample-level columns of the same name

        Returns:
            New AbundanceTable with the columns registered as sample-level
        """
        frame = self._check_key_frame(frame, self._sample_ids, "sample")
        return self._join(frame, on=self._sample_column, registry="sample", overwrite=overwrite)

    def join_features(self, frame: pd.DataFrame | pd.Series, overwrite: bool = False) -> AbundanceTable:
        """
        Broadcast per-gene values onto every row of each gene.

        Args:
            frame: Values indexed by gene id (unique, covering all genes)
            overwrite: Replace existing gene-level columns of the same name

        Returns:
            New AbundanceTable with the columns registered as gene-level
        """
        frame = self._check_key_frame(frame, self._feature_ids, "gene")
        return self._join(frame, on=self._feature_column, registry="feature", overwrite=overwrite)

    def with_observation(
        self,
        column: str,
        matrix: pd.DataFrame,
        overwrite: bool = False,
    ) -> AbundanceTable:
        """
        Add a per-cell column from a gene × sample matrix.

        Args:
            column: Name of the new observation column
            matrix: Values indexed by gene id with one column per sample;
                must cover every gene and sample of the table
            overwrite: Replace an existing observation column of that name

        Returns:
            New AbundanceTable with the added column
        """
        if column in self._data.columns:
            if not overwrite or column not in self.observation_columns or column == self._count_column:
                raise InputShapeError(f"Column '{column}' already exists in table")

        matrix = matrix.copy()
        matrix.index = matrix.index.astype(str)
        matrix.columns = matrix.columns.astype(str)
        _check_unique(matrix.index, "gene")
        _check_unique(matrix.columns, "sample")
        missing_features = self._feature_ids.difference(matrix.index)
        missing_samples = self._sample_ids.difference(matrix.columns)
        if len(missing_features) or len(missing_samples):
            raise InputShapeError(
                f"Matrix for '{column}' does not cover the table: missing "
                f"{len(missing_features)} genes and {len(missing_samples)} samples"
            )

        wide = matrix.reindex(index=self._feature_ids, columns=self._sample_ids).to_numpy()
        rows = self._feature_ids.get_indexer(self._data[self._feature_column])
        cols = self._sample_ids.get_indexer(self._data[self._sample_column])

        data = self._data.copy()
        data[column] = wide[rows, cols]
        return self._rebuild(data)

    # ------------------------------------------------------------------
    # Subsetting and identifiers
    # ------------------------------------------------------------------

    def drop_columns(self, columns: Iterable[str]) -> AbundanceTable:
        """
        Remove sample, gene or observation columns.

        Raises:
            InputShapeError: If a column is a key or the count column
            KeyError: If a column is not in the table
        """
        columns = [str(c) for c in columns]
        protected = {self._feature_column, self._sample_column, self._count_column}
        if protected.intersection(columns):
            raise InputShapeError(
                f"Cannot drop key or count columns: {sorted(protected.intersection(columns))}"
            )
        unknown = [c for c in columns if c not in self._data.columns]
        if unknown:
            raise KeyError(f"Columns not in table: {unknown}")

        return self._rebuild(
            self._data.drop(columns=columns),
            sample_columns=[c for c in self._sample_columns if c not in columns],
            feature_columns=[c for c in self._feature_columns if c not in columns],
        )

    def select_features(self, selector: np.ndarray | pd.Series | Iterable[str]) -> AbundanceTable:
        """
        Keep every row of the selected genes.

        Args:
            selector: Boolean mask aligned with feature_ids, or an iterable
                of gene ids

        Returns:
            New AbundanceTable restricted to the selected genes
        """
        if isinstance(selector, (np.ndarray, pd.Series)) and selector.dtype == bool:
            mask = np.asarray(selector)
            if len(mask) != self.n_features:
                raise ValueError(
                    f"mask length ({len(mask)}) must match n_features ({self.n_features})"
                )
            keep = self._feature_ids[mask]
        else:
            keep = pd.Index([str(f) for f in selector])
            unknown = keep.difference(self._feature_ids)
            if len(unknown):
                raise KeyError(f"Unknown genes: {list(unknown[:5])}")

        data = self._data[self._data[self._feature_column].isin(keep)]
        return self._rebuild(data)

    def rename_samples(self, rewrite: Callable[[str], str]) -> AbundanceTable:
        """
        Apply a string rewrite to every sample identifier.

        Args:
            rewrite: Function mapping an old sample id to a new one, e.g.
                ``strip_prefix("SRR")``

        Returns:
            New AbundanceTable with rewritten sample ids

        Raises:
            IdentifierCollisionError: If two samples map to the same id
        """
        mapping = pd.Series(
            [str(rewrite(sid)) for sid in self._sample_ids], index=self._sample_ids
        )
        clashing = mapping[mapping.duplicated(keep=False)]
        if not clashing.empty:
            collisions = {
                new: list(old) for new, old in clashing.groupby(clashing).groups.items()
            }
            raise IdentifierCollisionError(
                f"Sample rewrite {getattr(rewrite, '__name__', rewrite)} is not injective: "
                f"{collisions}",
                collisions=collisions,
            )

        n_changed = int((mapping.index != mapping.values).sum())
        logger.info(f"Renamed {n_changed}/{self.n_samples} sample identifiers")

        data = self._data.copy()
        data[self._sample_column] = data[self._sample_column].map(mapping)
        return self._rebuild(data)

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    def pivot_sample(self) -> pd.DataFrame:
        """
        Collapse to one row per sample, keeping sample-level columns.

        Raises:
            BroadcastConsistencyError: If a sample-level column varies
                within a sample
        """
        self._check_constant(self._sample_column, self._sample_columns)
        frame = self._data.drop_duplicates(subset=[self._sample_column])
        frame = frame[[self._sample_column, *self._sample_columns]]
        frame = frame.set_index(self._sample_column).reindex(self._sample_ids)
        return frame.reset_index()

    def pivot_feature(self) -> pd.DataFrame:
        """
        Collapse to one row per gene, keeping gene-level columns.

        Raises:
            BroadcastConsistencyError: If a gene-level column varies within
                a gene
        """
        self._check_constant(self._feature_column, self._feature_columns)
        frame = self._data.drop_duplicates(subset=[self._feature_column])
        frame = frame[[self._feature_column, *self._feature_columns]]
        frame = frame.set_index(self._feature_column).reindex(self._feature_ids)
        return frame.reset_index()

    def verify_broadcast(self) -> None:
        """Check both sample-level and gene-level broadcast consistency."""
        self._check_constant(self._sample_column, self._sample_columns)
        self._check_constant(self._feature_column, self._feature_columns)

    # ------------------------------------------------------------------
    # Misc
    # ------------------------------------------------------------------

    def to_frame(self) -> pd.DataFrame:
        """Copy of the long DataFrame."""
        return self._data.copy()

    def copy(self, deep: bool = True) -> AbundanceTable:
        """
        Create a copy of this table.

        Args:
            deep: If True, copy the underlying DataFrame
        """
        return self._rebuild(self._data.copy() if deep else self._data)

    def __repr__(self) -> str:
        return (
            f"AbundanceTable({self.n_features} genes × {self.n_samples} samples, "
            f"{len(self)} rows)\n"
            f"  Sample columns: {self._sample_columns}\n"
            f"  Gene columns: {self._feature_columns}\n"
            f"  Observation columns: {self.observation_columns}"
        )

    def __str__(self) -> str:
        return self.__repr__()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _rebuild(
        self,
        data: pd.DataFrame,
        sample_columns: Optional[Sequence[str]] = None,
        feature_columns: Optional[Sequence[str]] = None,
    ) -> AbundanceTable:
        return AbundanceTable(
            data,
            feature_column=self._feature_column,
            sample_column=self._sample_column,
            count_column=self._count_column,
            sample_columns=self._sample_columns if sample_columns is None else sample_columns,
            feature_columns=self._feature_columns if feature_columns is None else feature_columns,
        )

    def _check_key_frame(
        self,
        frame: pd.DataFrame | pd.Series,
        expected: pd.Index,
        kind: str,
    ) -> pd.DataFrame:
        if isinstance(frame, pd.Series):
            if frame.name is None:
                raise ValueError(f"Series joined onto {kind}s must be named")
            frame = frame.to_frame()
        if not isinstance(frame, pd.DataFrame):
            raise TypeError(f"Expected DataFrame indexed by {kind} id, got {type(frame)}")

        frame = frame.copy()
        frame.index = frame.index.astype(str)
        _check_unique(frame.index, kind)

        missing = expected.difference(frame.index)
        if len(missing):
            raise InputShapeError(
                f"{len(missing)} {kind}s missing from joined frame, e.g. {list(missing[:5])}"
            )
        extra = frame.index.difference(expected)
        if len(extra):
            logger.debug(f"Ignoring {len(extra)} {kind}s not present in table")
        return frame.reindex(expected)

    def _join(self, frame: pd.DataFrame, on: str, registry: str, overwrite: bool) -> AbundanceTable:
        new_columns = [str(c) for c in frame.columns]
        frame.columns = new_columns
        own = self._sample_columns if registry == "sample" else self._feature_columns

        clashes = [c for c in new_columns if c in self._data.columns]
        foreign = [c for c in clashes if c not in own]
        if foreign:
            raise InputShapeError(
                f"Cannot join {registry}-level columns {foreign}: names already used "
                "by key, observation or other-level columns"
            )
        if clashes and not overwrite:
            raise InputShapeError(f"{registry.capitalize()}-level columns already exist: {clashes}")

        data = self._data.drop(columns=clashes).join(frame, on=on)
        registered = [c for c in own if c not in clashes] + new_columns

        if registry == "sample":
            return self._rebuild(data, sample_columns=registered)
        return self._rebuild(data, feature_columns=registered)

    def _check_constant(self, key: str, columns: Sequence[str]) -> None:
        if not columns:
            return
        n_unique = self._data.groupby(key, sort=False)[list(columns)].nunique(dropna=False)
        for column in columns:
            varying = n_unique.index[n_unique[column] > 1]
            if len(varying):
                raise BroadcastConsistencyError(
                    f"Column '{column}' should be constant per {key} but varies "
                    f"within {len(varying)} group(s), e.g. {list(varying[:5])}",
                    column=column,
                    keys=list(varying),
                )


def _check_unique(index: pd.Index, kind: str) -> None:
    duplicated = index[index.duplicated()]
    if len(duplicated):
        raise InputShapeError(
            f"Duplicate {kind} identifiers: {sorted(set(duplicated))[:10]}"
        )


def _align_metadata(
    metadata: pd.DataFrame,
    ids: pd.Index,
    kind: str,
    reserved: Sequence[str],
) -> pd.DataFrame:
    """Validate metadata keyed by ``ids`` and return it in ``ids`` order."""
    if not isinstance(metadata, pd.DataFrame):
        raise TypeError(f"{kind} metadata must be pd.DataFrame, got {type(metadata)}")

    metadata = metadata.copy()
    metadata.index = metadata.index.astype(str)
    metadata.columns = [str(c) for c in metadata.columns]
    _check_unique(metadata.index, f"{kind} metadata")

    clashing = [c for c in metadata.columns if c in reserved]
    if clashing:
        raise InputShapeError(f"{kind.capitalize()} metadata columns clash with reserved names: {clashing}")

    missing = ids.difference(metadata.index)
    extra = metadata.index.difference(ids)
    if len(missing) or len(extra):
        raise InputShapeError(
            f"{kind.capitalize()} metadata does not match count matrix: "
            f"{len(missing)} {kind}s without metadata (e.g. {list(missing[:5])}), "
            f"{len(extra)} metadata rows without counts (e.g. {list(extra[:5])})"
        )
    return metadata.reindex(ids)
