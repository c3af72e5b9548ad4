"""Shared fixtures for ProteoDiff tests."""

import anndata as ad
import numpy as np
import pandas as pd
import polars as pl
import pytest

SAMPLES = ["A_1", "A_2", "A_3", "B_1", "B_2", "B_3"]
CONDITIONS = ["A", "A", "A", "B", "B", "B"]


@pytest.fixture
def psm_table():
    """Wide PSM table: 3 proteins, 2 peptides each, 2 PSMs per peptide."""
    rng = np.random.default_rng(0)
    rows = []
    for prot in ["P1", "P2", "P3"]:
        for pep in range(2):
            for psm in range(2):
                rows.append({
                    "PSM": f"{prot}_pep{pep}_psm{psm}",
                    "PEPTIDE": f"{prot}_pep{pep}",
                    "PROTEIN": prot,
                    "GENE_NAMES": f"GENE_{prot}",
                    **{s: float(rng.uniform(100, 1000)) for s in SAMPLES},
                })
    return pl.DataFrame(rows)


@pytest.fixture
def sample_meta():
    return pl.DataFrame({
        "SAMPLE": SAMPLES,
        "CONDITION": CONDITIONS,
        "CONDITION_ORIG": CONDITIONS,
    })


@pytest.fixture
def simulated_adata():
    """100 features x 6 samples (3 vs 3); the first 10 features are up by 2 in B."""
    rng = np.random.default_rng(42)
    n_features = 100
    base = rng.normal(20, 1, size=n_features)
    X = base[None, :] + rng.normal(0, 0.3, size=(len(SAMPLES), n_features))
    X[3:, :10] += 2.0

    obs = pd.DataFrame({"CONDITION": CONDITIONS}, index=SAMPLES)
    var = pd.DataFrame(index=[f"PROT{i:03d}" for i in range(n_features)])
    adata = ad.AnnData(X=X, obs=obs, var=var)
    adata.layers["raw"] = np.exp2(X)
    return adata
