"""
Pytest configuration and shared fixtures.

Provides small hand-checkable tables and synthetic negative-binomial count
data with known differential genes.
"""

import numpy as np
import pandas as pd
import pytest

from tidyrna.core.table import AbundanceTable


def generate_nb_counts(
    n_genes: int = 200,
    n_per_group: int = 3,
    n_de: int = 20,
    fold_change: float = 4.0,
    dispersion: float = 0.05,
    seed: int = 42,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Generate negative-binomial counts for a two-group experiment.

    Args:
        n_genes: Number of genes
        n_per_group: Samples per group
        n_de: Number of up-regulated genes in the treated group (the first
            ``n_de`` genes)
        fold_change: Fold change of the up-regulated genes
        dispersion: NB dispersion (variance = mu + dispersion * mu^2)
        seed: Random seed for reproducibility

    Returns:
        (counts, samples): genes × samples count matrix and sample
        annotations with ``group`` (treated/untreated) and ``batch``

    Design:
        - Base means log-uniform between 20 and 2000
        - Library sizes vary by up to 2-fold between samples
        - Gene ids are gene_000.., sample ids S1..
    """
    rng = np.random.RandomState(seed)
    n_samples = 2 * n_per_group

    base = np.exp(rng.uniform(np.log(20), np.log(2000), size=n_genes))
    depth = rng.uniform(0.7, 1.4, size=n_samples)
    group = np.array(["treated"] * n_per_group + ["untreated"] * n_per_group)

    mu = base[:, None] * depth[None, :]
    mu[:n_de, group == "treated"] *= fold_change

    # NB as gamma-Poisson mixture
    shape = 1.0 / dispersion
    lam = rng.gamma(shape, mu / shape)
    counts = rng.poisson(lam)

    sample_ids = [f"S{j + 1}" for j in range(n_samples)]
    gene_ids = [f"gene_{i:03d}" for i in range(n_genes)]

    counts_df = pd.DataFrame(counts, index=gene_ids, columns=sample_ids)
    samples_df = pd.DataFrame(
        {
            "group": group,
            "batch": ["a", "b"] * n_per_group,
        },
        index=sample_ids,
    )
    return counts_df, samples_df


@pytest.fixture(scope="session")
def nb_data():
    """Synthetic two-group NB counts: (counts, samples)."""
    return generate_nb_counts()


@pytest.fixture(scope="session")
def nb_table(nb_data):
    """AbundanceTable over the synthetic NB counts."""
    counts, samples = nb_data
    return AbundanceTable.from_matrix(counts, sample_metadata=samples)


@pytest.fixture
def scenario_counts():
    """Two genes × four samples; library sizes 55, 64, 9, 11."""
    return pd.DataFrame(
        [[50, 60, 5, 6], [5, 4, 4, 5]],
        index=["A", "B"],
        columns=["s1", "s2", "s3", "s4"],
    )


@pytest.fixture
def scenario_samples():
    return pd.DataFrame(
        {"group": ["treated", "treated", "untreated", "untreated"]},
        index=["s1", "s2", "s3", "s4"],
    )


@pytest.fixture
def scenario_table(scenario_counts, scenario_samples):
    return AbundanceTable.from_matrix(scenario_counts, sample_metadata=scenario_samples)


@pytest.fixture(scope="session")
def one_sided_data(nb_data):
    """NB counts plus ``gene_treated_only``, expressed in the treated samples only."""
    counts, samples = nb_data
    extra = pd.DataFrame([[200, 220, 210, 0, 0, 0]], index=["gene_treated_only"],
                         columns=counts.columns)
    return pd.concat([counts, extra]), samples


@pytest.fixture(scope="session")
def one_sided_table(one_sided_data):
    counts, samples = one_sided_data
    return AbundanceTable.from_matrix(counts, sample_metadata=samples)
