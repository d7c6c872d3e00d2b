import numpy as np
import pandas as pd
import pytest
from scipy.integrate import trapezoid
from beecv.errors import ModelSpecificationError
from beecv.phylomixedmodel import FittedModel, ModelFormula, PriorConfig
from beecv.phylosignal import (compute_lambda, phylosignal, prior_lambda, savage_dickey_lambda, posterior_mass_near_zero,
                               conditional_density_at_zero, reflected_density_at_zero)

def makefitted(sd_phylo, sigma, reliable=True, intercept=0.0, y=None, correlation=None):
    c, d = sd_phylo.shape
    n = 3 if y is None else len(y)
    samples = {"Intercept": np.full((c, d), intercept), "b_n_sites": np.zeros((c, d)), "sd_phylo": sd_phylo,
               "sigma": sigma, "r_phylo": np.zeros((c, d, n))}
    X = None if y is None else np.zeros((n, 1))
    return FittedModel(formula=ModelFormula(), priors=PriorConfig(), species=["s{}".format(i) for i in range(n)], samples=samples,
                       diagnostics=pd.DataFrame(), reliable=reliable, y=y, X=X, correlation=correlation)

def two_clades(n=4, rho=0.8):
    A = np.eye(2 * n)
    A[:n, :n] = A[n:, n:] = rho
    np.fill_diagonal(A, 1.0)
    return A

@pytest.fixture
def rng():
    return np.random.default_rng(11)

def test_lambda_bounds(rng):
    lam = compute_lambda(np.abs(rng.normal(0, 1, 1000)), np.abs(rng.normal(0, 1, 1000)))
    assert np.all((lam >= 0) & (lam <= 1))
    assert compute_lambda(1.0, 1.0) == pytest.approx(0.5)
    assert compute_lambda(3.0, 4.0) == pytest.approx(9 / 25)
    assert compute_lambda(0.0, 0.0) == 0.0

def test_prior_lambda_is_reproducible():
    first = prior_lambda(PriorConfig(), n=1000, seed=5)
    second = prior_lambda(PriorConfig(), n=1000, seed=5)
    assert np.array_equal(first, second)
    assert np.all((first >= 0) & (first <= 1))

def test_no_phylogenetic_signal(rng):
    fitted = makefitted(np.abs(rng.normal(0, 0.01, (2, 1000))), rng.normal(1.0, 0.05, (2, 1000)))
    result = phylosignal(fitted, method="mass", prior_draws=20000)
    assert result.lambda_stats.loc["lambda", "Median"] < 0.01
    assert result.evidence_ratio < 1
    assert result.posterior_probability < 0.5
    kde = phylosignal(fitted, prior_draws=20000, method="kde")
    assert kde.evidence_ratio < 1

def test_strong_signal_mass_is_bounded_by_draw_count(rng):
    fitted = makefitted(rng.normal(1.0, 0.05, (2, 1000)), np.abs(rng.normal(0, 0.01, (2, 1000))))
    result = phylosignal(fitted, method="mass", prior_draws=20000)
    assert result.lambda_stats.loc["lambda", "Median"] > 0.99
    assert result.posterior_at_zero == pytest.approx(0.5 / 2001)
    assert np.isfinite(result.evidence_ratio)
    assert result.evidence_ratio == pytest.approx(result.prior_at_zero * 2 * 2001)
    assert result.posterior_probability > 0.99

def test_finite_posterior_without_draws_near_zero(rng):
    # spread-out posterior that happens to miss [0, epsilon]
    lam = rng.uniform(0.05, 0.6, 1000)
    prior = prior_lambda(PriorConfig(), n=20000, seed=1)
    prior_at_zero, posterior_at_zero, ER = savage_dickey_lambda(lam, prior, epsilon=0.01)
    assert posterior_at_zero == pytest.approx(0.5 / 1001)
    assert ER == pytest.approx(2 * 1001 * prior_at_zero)

def test_collapsed_posterior_is_infinite():
    assert posterior_mass_near_zero(np.full(100, 0.9), 0.01) == 0.0
    _, _, ER = savage_dickey_lambda(np.full(100, 0.9), np.linspace(0, 1, 101))
    assert np.isinf(ER)

def test_capped_evidence_ratio():
    _, _, ER = savage_dickey_lambda(np.full(100, 0.9), np.linspace(0, 1, 101), max_evidence_ratio=1e6)
    assert ER == 1e6

def test_interval_ratio():
    prior = np.linspace(0, 1, 101)
    posterior = np.array([0.0, 0.005, 0.5, 0.6])
    prior_at_zero, posterior_at_zero, ER = savage_dickey_lambda(posterior, prior, epsilon=0.01)
    assert prior_at_zero == pytest.approx(2 / 101)
    assert posterior_at_zero == pytest.approx((2 + 0.5) / 5)
    assert ER == pytest.approx((2 / 101) / 0.5)

def test_unknown_method(rng):
    with pytest.raises(ModelSpecificationError):
        savage_dickey_lambda(np.array([0.5]), np.array([0.5]), method="logspline")
    fitted = makefitted(rng.normal(1.0, 0.1, (2, 50)), rng.normal(1.0, 0.1, (2, 50)))
    with pytest.raises(ModelSpecificationError):
        phylosignal(fitted, method="logspline")

def test_reflected_density_of_uniform():
    x = np.random.default_rng(0).uniform(0, 1, 20000)
    assert reflected_density_at_zero(x) == pytest.approx(1.0, abs=0.1)

def test_conditional_density_matches_prior_under_flat_likelihood():
    priors = PriorConfig()
    d = np.ones(5)
    density = conditional_density_at_zero(np.zeros(5), d, 1e6, priors)
    assert density == pytest.approx(priors.sd_density_at_zero(), rel=0.02)

def test_conditional_density_matches_direct_quadrature():
    priors = PriorConfig()
    d = np.linalg.eigvalsh(two_clades())
    xi2 = np.full(8, 0.3)
    sigma = 0.4
    s = np.linspace(0, 60, 600001)
    v = np.square(s)[:, None] * d[None, :] + sigma ** 2
    g = np.exp(priors.log_sd_density(s) - 0.5 * np.sum(np.log(v) + xi2[None, :] / v, axis=1))
    expected = g[0] / trapezoid(g, s)
    assert conditional_density_at_zero(xi2, d, sigma, priors) == pytest.approx(expected, rel=0.01)

def test_conditional_without_residual_spread(rng):
    y = np.zeros(12)
    fitted = makefitted(np.abs(rng.normal(0, 0.01, (2, 200))), np.abs(rng.normal(0.01, 0.005, (2, 200))),
                        y=y, correlation=np.eye(12))
    result = phylosignal(fitted)
    assert result.method == "conditional"
    assert result.prior_at_zero == pytest.approx(PriorConfig().sd_density_at_zero())
    assert result.posterior_at_zero > result.prior_at_zero
    assert result.evidence_ratio < 1
    assert result.posterior_probability < 0.5

def test_conditional_with_clade_structure(rng):
    y = np.array([-0.5] * 4 + [0.5] * 4)
    fitted = makefitted(np.abs(rng.normal(0.7, 0.05, (2, 200))), np.abs(rng.normal(0.02, 0.005, (2, 200))),
                        y=y, correlation=two_clades())
    result = phylosignal(fitted)
    assert result.evidence_ratio > 1e3
    assert result.posterior_probability > 0.999

def test_conditional_needs_model_data(rng):
    fitted = makefitted(rng.normal(1.0, 0.1, (2, 50)), rng.normal(1.0, 0.1, (2, 50)))
    with pytest.raises(ModelSpecificationError):
        phylosignal(fitted)

def test_report(rng, tmp_path):
    fitted = makefitted(rng.normal(1.0, 0.1, (2, 500)), rng.normal(1.0, 0.1, (2, 500)), reliable=False)
    result = phylosignal(fitted, method="mass", prior_draws=5000)
    assert not result.reliable
    result.write(output=tmp_path / "Phylo_Signal.tsv")
    df = pd.read_csv(tmp_path / "Phylo_Signal.tsv", sep='\t', index_col=0)
    assert 0.3 < df.loc["lambda", "Mean"] < 0.7
    assert df.loc["lambda", "Method"] == "mass"
    assert "Evidence ratio (lambda>0)" in df.columns
    assert "R_hat" in df.columns
