import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass
from scipy import stats
from scipy.integrate import trapezoid
from beecv.bayesstats import posteriorstats
from beecv.errors import ModelSpecificationError

SIGNAL_METHODS = ("conditional", "mass", "kde")

def compute_lambda(sd_phylo, sigma):
    """
    Pagel's lambda analogue sd_phylo^2 / (sd_phylo^2 + sigma^2), per draw
    """
    var_phylo = np.square(np.asarray(sd_phylo, dtype=float))
    var_resid = np.square(np.asarray(sigma, dtype=float))
    total = var_phylo + var_resid
    return np.divide(var_phylo, total, out=np.zeros_like(total), where=total > 0)

def reflected_density_at_zero(samples, bw_method='scott'):
    """
    Gaussian KDE at 0 with the samples reflected about the lower bound
    """
    samples = np.asarray(samples, dtype=float)
    samples = samples[np.isfinite(samples)]
    if np.all(samples == samples[0]):
        return np.inf if samples[0] == 0 else 0.0
    kde = stats.gaussian_kde(np.concatenate([samples, -samples]), bw_method=bw_method)
    return 2 * kde.evaluate(0.0)[0]

def mass_near_zero(samples, epsilon):
    return float(np.mean(np.asarray(samples) <= epsilon))

def posterior_mass_near_zero(samples, epsilon):
    """
    Share of draws in [0, epsilon] with a (k + 0.5) / (N + 1) floor, so that
    N draws bound the evidence ratio by about 2 * prior mass * (N + 1).
    Only a posterior collapsed on a single value above epsilon gives 0.
    """
    samples = np.asarray(samples, dtype=float)
    k = int(np.sum(samples <= epsilon))
    if k == 0 and np.all(samples == samples[0]):
        return 0.0
    return (k + 0.5) / (len(samples) + 1)

def prior_lambda(priors, n=50000, seed=1):
    rng = np.random.default_rng(seed)
    sd_phylo, sigma = priors.sample_scales(rng, n)
    return compute_lambda(sd_phylo, sigma)

def conditional_density_at_zero(xi2, d, sigma, priors, n_grid=1000):
    """
    Density at 0 of p(sd_phylo | Intercept, b, sigma, y) with the phylogenetic
    intercepts integrated out. xi2 are the squared residuals rotated onto the
    eigenvectors of the correlation matrix, d its eigenvalues.
    """
    sigma = max(float(sigma), 1e-150)
    def logg(s):
        v = np.square(s)[:, None] * d[None, :] + sigma ** 2
        return priors.log_sd_density(s) - 0.5 * np.sum(np.log(v) + xi2[None, :] / v, axis=1)
    lower = 1e-4 * min(sigma / np.sqrt(max(d.max(), 1.0)), priors.sd_scale)
    upper = 1e3 * max(sigma, np.sqrt(np.sum(xi2)), priors.sd_scale)
    s = np.geomspace(lower, upper, n_grid)
    logs = logg(s)
    log0 = logg(np.zeros(1))[0]
    top = max(np.max(logs), log0)
    # the integrand is flat on [0, lower]
    area = lower * np.exp(log0 - top) + trapezoid(np.exp(logs - top) * s, np.log(s))
    return float(np.exp(log0 - top) / area)

def sd_density_at_zero(fitted, n_grid=1000):
    """
    Rao-Blackwellised posterior density of sd_phylo at 0: the full conditional
    density at 0 averaged over the posterior draws
    """
    if fitted.y is None or fitted.X is None or fitted.correlation is None:
        raise ModelSpecificationError("The conditional Savage-Dickey ratio needs the model data on the fitted model")
    d, Q = np.linalg.eigh(np.asarray(fitted.correlation, dtype=float))
    d = np.clip(d, 0.0, None)
    coefs = fitted.formula.coefnames()
    intercept = fitted.draws("Intercept")
    if coefs:
        b = np.column_stack([fitted.draws(name) for name in coefs])
        mu = intercept[:, None] + b @ np.asarray(fitted.X, dtype=float).T
    else:
        mu = np.repeat(intercept[:, None], len(fitted.y), axis=1)
    xi2 = np.square((np.asarray(fitted.y, dtype=float)[None, :] - mu) @ Q)
    sigma = fitted.draws("sigma")
    densities = [conditional_density_at_zero(xi2[i], d, sigma[i], fitted.priors, n_grid=n_grid) for i in range(len(sigma))]
    return float(np.mean(densities))

@dataclass
class HypothesisResult:
    lambda_draws: np.ndarray
    lambda_stats: pd.DataFrame
    method: str
    prior_at_zero: float
    posterior_at_zero: float
    evidence_ratio: float
    posterior_probability: float
    reliable: bool = True

    def to_frame(self):
        row = self.lambda_stats.loc["lambda"].to_dict()
        row.update({"Method": self.method, "Prior at 0": self.prior_at_zero, "Posterior at 0": self.posterior_at_zero,
                    "Evidence ratio (lambda>0)": self.evidence_ratio, "Posterior probability (lambda>0)": self.posterior_probability,
                    "Reliable": self.reliable})
        return pd.DataFrame([row], index=["lambda"])

    def write(self, output="Phylo_Signal.tsv"):
        self.to_frame().to_csv(output, header=True, index=True, sep='\t')
        logging.info("Phylogenetic signal written to {}".format(output))

def evidence_ratio(prior_at_zero, posterior_at_zero, max_evidence_ratio=None):
    if posterior_at_zero == 0:
        ER = np.inf
    else:
        ER = prior_at_zero / posterior_at_zero
    if max_evidence_ratio is not None: ER = min(ER, max_evidence_ratio)
    return float(ER)

def savage_dickey_lambda(lambda_draws, prior_draws, method="mass", epsilon=0.01, max_evidence_ratio=None):
    """
    Evidence ratio for lambda > 0 against lambda = 0 from lambda draws.

    method 'mass' compares prior and posterior mass in [0, epsilon], the interval
    form of the Savage-Dickey ratio; 'kde' compares reflected KDE densities at 0.
    A posterior with zero density (or no spread away from 0) gives inf, or
    max_evidence_ratio when a cap is supplied.
    """
    if method == "mass":
        prior_at_zero = mass_near_zero(prior_draws, epsilon)
        posterior_at_zero = posterior_mass_near_zero(lambda_draws, epsilon)
    elif method == "kde":
        prior_at_zero = reflected_density_at_zero(prior_draws)
        posterior_at_zero = reflected_density_at_zero(lambda_draws)
    else:
        raise ModelSpecificationError("Unknown Savage-Dickey method {}".format(method))
    return prior_at_zero, posterior_at_zero, evidence_ratio(prior_at_zero, posterior_at_zero, max_evidence_ratio)

def phylosignal(fitted, per=90, method="conditional", epsilon=0.01, prior_draws=50000, seed=1, max_evidence_ratio=None):
    """
    Posterior of lambda from a fitted phylogenetic mixed model and the
    one-sided test of lambda > 0.

    The default 'conditional' method is the Savage-Dickey ratio of the model
    without phylogenetic intercepts: prior density of sd_phylo at 0 over its
    Rao-Blackwellised posterior density at 0. 'mass' and 'kde' work on the
    lambda draws, see savage_dickey_lambda.
    """
    if method not in SIGNAL_METHODS:
        raise ModelSpecificationError("Unknown Savage-Dickey method {}, choose from {}".format(method, ", ".join(SIGNAL_METHODS)))
    lambda_draws = compute_lambda(fitted.draws("sd_phylo"), fitted.draws("sigma"))
    lambda_stats = posteriorstats({"lambda": lambda_draws}, fitted.num_chains, per=per)
    if method == "conditional":
        prior_at_zero = fitted.priors.sd_density_at_zero()
        posterior_at_zero = sd_density_at_zero(fitted)
        ER = evidence_ratio(prior_at_zero, posterior_at_zero, max_evidence_ratio)
    else:
        prior_at_zero, posterior_at_zero, ER = savage_dickey_lambda(lambda_draws, prior_lambda(fitted.priors, n=prior_draws, seed=seed),
                                                                    method=method, epsilon=epsilon, max_evidence_ratio=max_evidence_ratio)
    PP = 1.0 if np.isinf(ER) else ER / (1 + ER)
    logging.info("Posterior lambda: mean {:.4f}, median {:.4f}".format(lambda_stats.loc["lambda", "Mean"], lambda_stats.loc["lambda", "Median"]))
    logging.info("Evidence ratio for lambda > 0 ({}): {} (posterior probability {:.4f})".format(method, ER, PP))
    if not fitted.reliable:
        logging.warning("Phylogenetic signal derived from an UNRELIABLE posterior")
    return HypothesisResult(lambda_draws=lambda_draws, lambda_stats=lambda_stats, method=method,
                            prior_at_zero=prior_at_zero, posterior_at_zero=posterior_at_zero,
                            evidence_ratio=ER, posterior_probability=PP, reliable=fitted.reliable)
