import numpy as np
import pandas as pd
import pytest
from beecv.phylomatrix import stringttophylo
from beecv.phylomixedmodel import PosteriorDraws

Star_tree = "(A:1,B:1,C:1,D:1,E:1);"
Nested_tree = "(((A:1,B:1):1,C:2):1,(D:2,E:2):1);"

def makeobservations(counts, seed=0):
    """
    Synthetic interaction table with the given number of rows per species
    """
    rng = np.random.default_rng(seed)
    rows = []
    for species, (n, mean_itd) in counts.items():
        for i in range(n):
            block = "B{}".format(i % 3)
            rows.append({"species": species,
                         "transect": "T{}".format(rng.integers(0, 8)),
                         "block": block,
                         "locality": "L{}".format(rng.integers(0, 2)),
                         "itd": rng.normal(mean_itd, 0.1 * mean_itd),
                         "plant": "P{}".format(rng.integers(0, 5))})
    return pd.DataFrame(rows)

@pytest.fixture
def observations():
    return makeobservations({"A": (30, 2.0), "B": (25, 3.0), "C": (10, 1.5), "D": (20, 2.5), "E": (40, 1.8)})

@pytest.fixture
def star_tree():
    return stringttophylo(Star_tree)

@pytest.fixture
def nested_tree():
    return stringttophylo(Nested_tree)

class FakeBackend:
    """
    Returns independent normal draws around fixed values instead of sampling
    """
    def __init__(self, sd_phylo=0.5, sigma=0.5, num_chains=4, num_samples=500, chain_shift=0.0, divergences=0, seed=0):
        self.sd_phylo = sd_phylo; self.sigma = sigma
        self.num_chains = num_chains; self.num_samples = num_samples
        self.chain_shift = chain_shift; self.divergences = divergences; self.seed = seed
        self.calls = []

    def fit(self, formula, data, correlation, priors):
        self.calls.append((formula, list(data[formula.group]), list(correlation.index)))
        rng = np.random.default_rng(self.seed)
        c, d, n, k = self.num_chains, self.num_samples, len(data), len(formula.predictors)
        shift = (np.arange(c) * self.chain_shift)[:, None]
        samples = {"Intercept": rng.normal(-2.0, 0.1, (c, d)) + shift,
                   "b": rng.normal(0.05, 0.01, (c, d, k)),
                   "sd_phylo": np.abs(rng.normal(self.sd_phylo, 0.02 + 0.05 * self.sd_phylo, (c, d))),
                   "sigma": np.abs(rng.normal(self.sigma, 0.02 + 0.05 * self.sigma, (c, d))),
                   "r_phylo": rng.normal(0.0, 0.1, (c, d, n)),
                   "z_phylo": rng.normal(0.0, 1.0, (c, d, n))}
        diverging = np.zeros((c, d), dtype=bool)
        diverging.flat[:self.divergences] = True
        return PosteriorDraws(samples=samples, diverging=diverging)

@pytest.fixture
def fake_backend():
    return FakeBackend

@pytest.fixture
def species_summary():
    return pd.DataFrame({"species": ["A", "B", "C", "D", "E"],
                         "cv4": [0.08, 0.10, 0.12, 0.09, 0.11],
                         "n_sites": [3, 5, 7, 4, 6],
                         "n_obs": [30, 25, 40, 20, 22]})
