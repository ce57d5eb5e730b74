"""
Formula-driven design matrices and contrasts for per-gene count models.

Designs are built with patsy from a formula over sample-level columns
(e.g. ``"0 + dex + cell"``) and renamed to the compact column names used
by the R/Bioconductor ecosystem, so contrasts read the same way there and
here::

    group[treated]     ->  grouptreated      (no-intercept coding)
    cell[T.N061011]    ->  cellN061011       (treatment coding)
    Intercept          ->  (Intercept)

Design matrix structure:
    X = [intercept? | factor dummies | numeric covariates | interactions]

Contrast vector structure:
    c = weights over the columns of X, parsed from expressions such as
        "dextrt - dexuntrt" with patsy's linear-constraint parser

A design that is not of full column rank cannot be fitted: the
coefficient of a confounded factor is not identifiable. build_design()
detects this before any fitting and names the columns and formula terms
involved.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping, Sequence, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from tidyrna.core.errors import DesignRankError, InputShapeError

logger = logging.getLogger(__name__)

__all__ = [
    'DesignMatrix',
    'build_design',
    'parse_contrasts',
    'leverage',
    'r_style_name',
]

_LEVEL_RE = re.compile(r"([^\[\]:]+)\[(?:T\.)?([^\]]*)\]")

ContrastSpec = Union[Mapping[str, str], Sequence[str], str, None]


def r_style_name(patsy_name: str) -> str:
    """
    Convert a patsy column name to the compact R-style name.

    Examples:
        >>> r_style_name("group[T.treated]")
        'grouptreated'
        >>> r_style_name("group[a]:cell[T.x]")
        'groupa:cellx'
        >>> r_style_name("Intercept")
        '(Intercept)'
    """
    if patsy_name == "Intercept":
        return "(Intercept)"
    return _LEVEL_RE.sub(r"\1\2", patsy_name)


@dataclass(frozen=True)
class DesignMatrix:
    """Design matrix for one formula over a set of samples.

    Attributes:
        X: Design matrix (n_samples, n_params), full column rank.
        column_names: R-style names for all columns.
        column_terms: Formula term each column belongs to.
        factor_names: Variables used by the formula, in order of appearance.
        sample_ids: Sample identifiers, one per row of X.
        formula: Formula the design was built from (without leading ``~``).
    """

    X: NDArray[np.float64]
    column_names: list[str]
    column_terms: list[str]
    factor_names: list[str]
    sample_ids: list[str]
    formula: str

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.X, index=self.sample_ids, columns=self.column_names)


def build_design(formula: str, sample_metadata: pd.DataFrame) -> DesignMatrix:
    """
    Build a full-rank design matrix from a formula.

    Args:
        formula: patsy/R formula over sample_metadata columns, e.g.
            ``"~ 0 + dex + cell"``. The leading ``~`` is optional.
        sample_metadata: One row per sample, indexed by sample id.

    Returns:
        DesignMatrix with R-style column names.

    Raises:
        InputShapeError: If the formula references unknown columns or the
            referenced columns contain missing values.
        DesignRankError: If the design is not of full column rank. The error
            names the redundant columns and the formula terms involved.
    """
    import patsy

    formula = formula.strip()
    if formula.startswith("~"):
        formula = formula[1:].strip()
    if not formula:
        raise InputShapeError("Design formula is empty")

    try:
        design = patsy.dmatrix(
            formula, sample_metadata, NA_action="raise", return_type="dataframe"
        )
    except patsy.PatsyError as e:
        raise InputShapeError(f"Cannot build design from formula '~ {formula}': {e}") from e

    info = design.design_info
    column_terms = [""] * design.shape[1]
    for term_name, span in info.term_name_slices.items():
        for j in range(span.start, span.stop):
            column_terms[j] = term_name

    factor_names: list[str] = []
    for term in info.terms:
        for factor in term.factors:
            name = factor.name()
            if name not in factor_names:
                factor_names.append(name)

    X = design.to_numpy(dtype=np.float64)
    column_names = [r_style_name(c) for c in design.columns]

    _check_rank(X, column_names, column_terms, formula)

    logger.debug(f"Design '~ {formula}': {X.shape[0]} samples × {X.shape[1]} columns "
                 f"{column_names}")

    return DesignMatrix(
        X=X,
        column_names=column_names,
        column_terms=column_terms,
        factor_names=factor_names,
        sample_ids=[str(s) for s in sample_metadata.index],
        formula=formula,
    )


def _check_rank(
    X: NDArray[np.float64],
    column_names: list[str],
    column_terms: list[str],
    formula: str,
) -> None:
    """Raise DesignRankError naming columns that depend on earlier ones."""
    n_params = X.shape[1]
    rank = np.linalg.matrix_rank(X)
    if rank == n_params:
        return

    kept: list[int] = []
    redundant: list[int] = []
    for j in range(n_params):
        candidate = kept + [j]
        if np.linalg.matrix_rank(X[:, candidate]) == len(candidate):
            kept.append(j)
        else:
            redundant.append(j)

    # Columns of the kept basis that each redundant column depends on
    involved_terms: list[str] = []
    for j in redundant:
        coef, *_ = np.linalg.lstsq(X[:, kept], X[:, j], rcond=None)
        partners = [kept[i] for i in np.flatnonzero(np.abs(coef) > 1e-8)]
        for k in [j, *partners]:
            term = column_terms[k]
            if term != "Intercept" and term not in involved_terms:
                involved_terms.append(term)

    confounded = [column_names[j] for j in redundant]
    raise DesignRankError(
        f"Design matrix for '~ {formula}' is not of full rank "
        f"(rank={rank}, n_params={n_params}). Columns {confounded} are linear "
        f"combinations of other columns; confounded terms: {involved_terms}. "
        "Remove or merge one of the confounded factors.",
        confounded_columns=confounded,
        confounded_terms=involved_terms,
    )


def parse_contrasts(
    contrasts: ContrastSpec,
    column_names: Sequence[str],
) -> dict[str, NDArray[np.float64]]:
    """
    Turn contrast expressions into weight vectors over design columns.

    Args:
        contrasts: Mapping name -> expression, a list of expressions (each
            named by itself), a single expression, or None to test the last
            coefficient of the design.
        column_names: R-style design column names.

    Returns:
        Ordered dict contrast name -> weight vector (n_params,)

    Raises:
        ValueError: If an expression references unknown columns, is not a
            single linear combination, or has a non-zero right-hand side.

    Examples:
        >>> parse_contrasts({"treated_vs_untreated": "grouptreated - groupuntreated"},
        ...                 ["grouptreated", "groupuntreated"])
        {'treated_vs_untreated': array([ 1., -1.])}
    """
    from patsy import PatsyError
    from patsy.constraint import linear_constraint

    names = list(column_names)

    if contrasts is None:
        vector = np.zeros(len(names))
        vector[-1] = 1.0
        return {names[-1]: vector}

    if isinstance(contrasts, str):
        contrasts = [contrasts]
    if not isinstance(contrasts, Mapping):
        contrasts = {str(expr): str(expr) for expr in contrasts}
    if not contrasts:
        raise ValueError("At least one contrast is required")

    parsed: dict[str, NDArray[np.float64]] = {}
    for name, expression in contrasts.items():
        try:
            constraint = linear_constraint(expression, names)
        except PatsyError as e:
            raise ValueError(
                f"Cannot parse contrast '{name}': {expression!r} "
                f"(design columns: {names}): {e}"
            ) from e

        if constraint.coefs.shape[0] != 1:
            raise ValueError(
                f"Contrast '{name}' must be a single linear combination, "
                f"got {constraint.coefs.shape[0]}"
            )
        if np.any(constraint.constants != 0):
            raise ValueError(f"Contrast '{name}' must compare coefficients against zero")

        vector = np.asarray(constraint.coefs[0], dtype=np.float64)
        if not np.any(vector != 0):
            raise ValueError(f"Contrast '{name}' has all-zero weights")
        parsed[str(name)] = vector

    return parsed


def leverage(X: NDArray[np.float64]) -> NDArray[np.float64]:
    """Diagonal of the hat matrix X (X'X)^-1 X' for a full-rank design."""
    Q, _ = np.linalg.qr(X)
    return np.sum(Q ** 2, axis=1)
