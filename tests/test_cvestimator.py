import math
import numpy as np
import pytest
from beecv.cvestimator import bao_cv4, naive_cv
from beecv.errors import InsufficientSampleSize, DegenerateInput

def reference_cv4(x):
    n = len(x)
    m = sum(x) / n
    s = math.sqrt(sum((v - m)**2 for v in x) / n)
    cv1 = s / m
    g1 = sum(((v - m) / s)**3 for v in x) / n
    g2 = sum(((v - m) / s)**4 for v in x) / n
    return cv1 - (cv1**3/n - cv1/(4*n) - cv1**2*g1/(2*n) - cv1*g2/(8*n))

def test_matches_formula():
    x = [1.0, 2.0, 3.0, 4.0]
    assert bao_cv4(x) == pytest.approx(reference_cv4(x), rel=1e-12)
    assert bao_cv4(x) == pytest.approx(0.4757234, abs=1e-6)

def test_skewed_sample_matches_formula():
    x = [1.9, 2.0, 2.1, 2.2, 2.4, 3.5]
    assert bao_cv4(x) == pytest.approx(reference_cv4(x), rel=1e-12)

def test_naive_cv():
    assert naive_cv([1.0, 2.0, 3.0, 4.0]) == pytest.approx(math.sqrt(1.25) / 2.5)
    assert naive_cv([1.0, 2.0, 3.0, 4.0], ddof=1) == pytest.approx(math.sqrt(5 / 3) / 2.5)

def test_ddof_changes_result():
    x = [2.1, 2.3, 1.9, 2.6, 2.2]
    assert bao_cv4(x, ddof=1) != pytest.approx(bao_cv4(x, ddof=0), rel=1e-6)

def test_permutation_invariance():
    rng = np.random.default_rng(42)
    x = rng.lognormal(mean=0.8, sigma=0.2, size=20)
    reference = bao_cv4(x)
    for _ in range(20):
        assert bao_cv4(rng.permutation(x)) == pytest.approx(reference, rel=1e-9)

def test_deterministic():
    x = [2.5, 2.7, 2.2, 3.1, 2.9, 2.4]
    assert bao_cv4(x) == bao_cv4(list(x))

def test_too_few_measurements():
    with pytest.raises(InsufficientSampleSize):
        bao_cv4([2.0])
    with pytest.raises(InsufficientSampleSize):
        bao_cv4([])

def test_zero_mean():
    with pytest.raises(DegenerateInput):
        bao_cv4([-1.0, 1.0])

def test_non_finite():
    with pytest.raises(DegenerateInput):
        bao_cv4([1.0, np.nan, 2.0])
    with pytest.raises(DegenerateInput):
        bao_cv4([1.0, np.inf, 2.0])

def test_zero_variance():
    with pytest.raises(DegenerateInput):
        bao_cv4([2.0, 2.0, 2.0])

def test_less_biased_than_naive_cv():
    rng = np.random.default_rng(2024)
    true_cv, n, reps = 0.2, 20, 4000
    samples = rng.normal(10.0, 10.0 * true_cv, size=(reps, n))
    cv4 = np.array([bao_cv4(s) for s in samples])
    cv1 = np.array([naive_cv(s) for s in samples])
    assert abs(cv4.mean() - true_cv) < abs(cv1.mean() - true_cv)
