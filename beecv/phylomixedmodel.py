import logging
import warnings
import numpy as np
import pandas as pd
import arviz as az
from scipy import stats
from dataclasses import dataclass, field
from beecv.bayesstats import posteriorstats
from beecv.errors import ModelSpecificationError, DegenerateInput, SamplingUnreliable

import jax.numpy as jnp
import jax.random as jrandom
import numpyro
import numpyro.distributions as dist
from numpyro.distributions import constraints
from numpyro.infer import MCMC, NUTS

SCALAR_PARAMETERS = ["Intercept", "sd_phylo", "sigma"]

@dataclass(frozen=True)
class PriorConfig:
    """
    Student-t(df, median(y), intercept_scale) on the intercept, half-Student-t on
    sd_phylo and sigma, flat prior on slopes unless b_scale is given
    """
    df: float = 3.0
    intercept_loc: float = None
    intercept_scale: float = 2.5
    sd_scale: float = 2.5
    sigma_scale: float = 2.5
    b_scale: float = None

    def validate(self):
        if self.df <= 0:
            raise ModelSpecificationError("Prior degrees of freedom must be positive")
        for name in ("intercept_scale", "sd_scale", "sigma_scale", "b_scale"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ModelSpecificationError("Prior {} must be positive".format(name))
        return self

    def halfstudent(self, scale):
        return dist.FoldedDistribution(dist.StudentT(self.df, 0.0, scale))

    def log_sd_density(self, s):
        """
        Log prior density of sd_phylo on [0, inf)
        """
        return stats.t.logpdf(np.asarray(s, dtype=float) / self.sd_scale, self.df) + np.log(2.0 / self.sd_scale)

    def sd_density_at_zero(self):
        return float(np.exp(self.log_sd_density(0.0)))

    def sample_scales(self, rng, size):
        """
        Prior draws of (sd_phylo, sigma) for Monte Carlo prior densities
        """
        sd_phylo = np.abs(rng.standard_t(self.df, size=size)) * self.sd_scale
        sigma = np.abs(rng.standard_t(self.df, size=size)) * self.sigma_scale
        return sd_phylo, sigma

@dataclass(frozen=True)
class ModelFormula:
    response: str = "cv4"
    predictors: tuple = ("n_sites",)
    group: str = "species"
    log_response: bool = True
    log_predictors: bool = False

    def __str__(self):
        y = "log({})".format(self.response) if self.log_response else self.response
        f = (lambda x: "log({})".format(x)) if self.log_predictors else (lambda x: x)
        fixed = " + ".join([f(x) for x in self.predictors]) or "1"
        return "{} ~ {} + (1 | gr({}, cov = A))".format(y, fixed, self.group)

    def coefnames(self):
        return ["b_{}".format(x) for x in self.predictors]

    def design(self, data):
        """
        Response vector, predictor matrix and group labels
        """
        missing = [col for col in [self.response, self.group] + list(self.predictors) if col not in data.columns]
        if missing:
            raise ModelSpecificationError("Formula '{}' names absent columns: {}".format(self, ", ".join(missing)))
        y = data[self.response].to_numpy(dtype=float)
        X = data[list(self.predictors)].to_numpy(dtype=float).reshape(len(data), len(self.predictors))
        if not np.all(np.isfinite(y)) or not np.all(np.isfinite(X)):
            raise DegenerateInput("Model data contain non-finite values")
        if self.log_response:
            if np.any(y <= 0):
                raise DegenerateInput("Non-positive {} cannot be log-transformed".format(self.response))
            y = np.log(y)
        if self.log_predictors:
            if np.any(X <= 0):
                raise DegenerateInput("Non-positive predictors cannot be log-transformed")
            X = np.log(X)
        species = [str(sp) for sp in data[self.group]]
        return y, X, species

@dataclass
class PosteriorDraws:
    """
    Chain-grouped draws, each array shaped (chains, draws, ...)
    """
    samples: dict
    diverging: np.ndarray = None

def makemodeler(priors, intercept_loc, n_coefs):
    def modeler(y, X, L):
        intercept = numpyro.sample("Intercept", dist.StudentT(priors.df, intercept_loc, priors.intercept_scale))
        if priors.b_scale is None:
            b = numpyro.sample("b", dist.ImproperUniform(constraints.real, (), event_shape=(n_coefs,)))
        else:
            b = numpyro.sample("b", dist.Normal(0.0, priors.b_scale).expand([n_coefs]).to_event(1))
        sd_phylo = numpyro.sample("sd_phylo", priors.halfstudent(priors.sd_scale))
        sigma = numpyro.sample("sigma", priors.halfstudent(priors.sigma_scale))
        # non-centred phylogenetic intercepts, r ~ MVN(0, sd_phylo^2 * A)
        z = numpyro.sample("z_phylo", dist.Normal(0.0, 1.0).expand([L.shape[0]]).to_event(1))
        r = numpyro.deterministic("r_phylo", sd_phylo * (L @ z))
        mu = intercept + X @ b + r
        numpyro.sample("obs", dist.Normal(mu, sigma), obs=y)
    return modeler

class NumpyroBackend:
    """
    NUTS sampling through numpyro
    """
    def __init__(self, num_warmup=1000, num_samples=1000, num_chains=4, chain_method="sequential", target_accept=0.95, seed=1, progress_bar=False):
        self.num_warmup = num_warmup; self.num_samples = num_samples; self.num_chains = num_chains
        self.chain_method = chain_method; self.target_accept = target_accept
        self.seed = seed; self.progress_bar = progress_bar

    def fit(self, formula, data, correlation, priors):
        y, X, species = formula.design(data)
        L = np.linalg.cholesky(correlation.loc[species, species].to_numpy(dtype=float))
        intercept_loc = float(np.median(y)) if priors.intercept_loc is None else priors.intercept_loc
        modeler = makemodeler(priors, intercept_loc, X.shape[1])
        kernel = NUTS(modeler, target_accept_prob=self.target_accept)
        mcmc = MCMC(kernel, num_warmup=self.num_warmup, num_samples=self.num_samples, num_chains=self.num_chains,
                    chain_method=self.chain_method, progress_bar=self.progress_bar)
        logging.info("Running {} chain(s) of NUTS: {} warmup, {} samples".format(self.num_chains, self.num_warmup, self.num_samples))
        mcmc.run(jrandom.PRNGKey(self.seed), jnp.asarray(y), jnp.asarray(X), jnp.asarray(L), extra_fields=("diverging",))
        samples = {k: np.asarray(v) for k, v in mcmc.get_samples(group_by_chain=True).items()}
        diverging = np.asarray(mcmc.get_extra_fields(group_by_chain=True)["diverging"])
        return PosteriorDraws(samples=samples, diverging=diverging)

@dataclass
class FittedModel:
    formula: ModelFormula
    priors: PriorConfig
    species: list
    samples: dict
    diagnostics: pd.DataFrame
    divergences: int = 0
    reliable: bool = True
    problems: list = field(default_factory=list)
    # transformed response, predictor matrix and correlation matrix in species order
    y: np.ndarray = None
    X: np.ndarray = None
    correlation: np.ndarray = None

    @property
    def num_chains(self):
        return self.samples["sigma"].shape[0]

    def draws(self, name):
        """
        Draws of one parameter with chains concatenated
        """
        if name not in self.samples:
            raise KeyError("No posterior samples for {}".format(name))
        x = self.samples[name]
        return x.reshape((-1,) + x.shape[2:])

    def flatsamples(self):
        dic = {}
        for name in SCALAR_PARAMETERS[:1] + self.formula.coefnames() + SCALAR_PARAMETERS[1:]:
            dic[name] = self.draws(name)
        r = self.draws("r_phylo")
        for i, sp in enumerate(self.species):
            dic["r_phylo[{}]".format(sp)] = r[:, i]
        return dic

    def summary(self, per=90):
        return posteriorstats(self.flatsamples(), self.num_chains, per=per)

    def export_Psamples(self, output="Posterior_Samples.tsv", output_stats="Posterior_Samples_Stats.tsv", per=90):
        df = pd.DataFrame.from_dict(self.flatsamples()).rename_axis("Iteration")
        df.index = df.index + 1 # Shift the numbering to start from 1
        df.to_csv(output, header=True, index=True, sep='\t')
        self.summary(per=per).to_csv(output_stats, header=True, index=True, sep='\t')
        logging.info("Posterior samples written to {} and {}".format(output, output_stats))

def checkcorrelation(correlation):
    if not isinstance(correlation, pd.DataFrame):
        raise ModelSpecificationError("The correlation matrix must be a labelled DataFrame")
    if correlation.shape[0] != correlation.shape[1] or list(correlation.index) != list(correlation.columns):
        raise ModelSpecificationError("The correlation matrix must be square with identical row and column labels")
    A = correlation.to_numpy(dtype=float)
    if not np.all(np.isfinite(A)):
        raise ModelSpecificationError("The correlation matrix contains non-finite entries")
    if not np.allclose(A, A.T):
        raise ModelSpecificationError("The correlation matrix is not symmetric")
    try:
        np.linalg.cholesky(A)
    except np.linalg.LinAlgError:
        raise ModelSpecificationError("The correlation matrix is not positive definite")

class PhyloMixedModel:
    """
    Gaussian model with a phylogenetically structured random intercept
    """
    def __init__(self, formula=None, priors=None, backend=None, max_rhat=1.05, min_ess=100):
        self.formula = formula or ModelFormula()
        self.priors = (priors or PriorConfig()).validate()
        self.backend = backend or NumpyroBackend()
        self.max_rhat = max_rhat; self.min_ess = min_ess

    def checkinputs(self, data, correlation):
        checkcorrelation(correlation)
        if self.formula.group not in data.columns:
            raise ModelSpecificationError("Grouping column {} is absent".format(self.formula.group))
        species = [str(sp) for sp in data[self.formula.group]]
        if len(species) != len(set(species)):
            raise ModelSpecificationError("Species must appear once in the model data")
        labels = [str(sp) for sp in correlation.index]
        if set(species) != set(labels):
            only_data = sorted(set(species) - set(labels)); only_matrix = sorted(set(labels) - set(species))
            raise ModelSpecificationError("Species keys differ between data and correlation matrix (data only: {}; matrix only: {})".format(only_data, only_matrix))
        data = data.copy(); data[self.formula.group] = species
        correlation = correlation.copy(); correlation.index = labels; correlation.columns = labels
        return data, correlation.loc[species, species]

    def fit(self, data, correlation):
        data, correlation = self.checkinputs(data, correlation)
        y, X, _ = self.formula.design(data)
        logging.info("Fitting {} to {} species".format(self.formula, len(data)))
        draws = self.backend.fit(self.formula, data, correlation, self.priors)
        samples = {k: np.asarray(v) for k, v in draws.samples.items() if k != "b"}
        b = np.asarray(draws.samples["b"])
        for i, name in enumerate(self.formula.coefnames()):
            samples[name] = b[..., i]
        divergences = 0 if draws.diverging is None else int(np.sum(draws.diverging))
        fitted = FittedModel(formula=self.formula, priors=self.priors, species=list(data[self.formula.group]),
                             samples=samples, diagnostics=None, divergences=divergences,
                             y=y, X=X, correlation=correlation.to_numpy(dtype=float))
        self.diagnose(fitted)
        return fitted

    def diagnose(self, fitted):
        """
        Split R-hat and bulk ESS of every reported parameter plus divergent transitions
        """
        names = SCALAR_PARAMETERS + fitted.formula.coefnames() + ["r_phylo"]
        idata = az.from_dict(posterior={name: fitted.samples[name] for name in names},
                             coords={"species": list(fitted.species)}, dims={"r_phylo": ["species"]})
        with warnings.catch_warnings():
            # arviz warns when R-hat is undefined for a single chain
            warnings.simplefilter("ignore")
            diagnostics = az.summary(idata, kind="diagnostics")
        fitted.diagnostics = diagnostics
        problems = []
        if fitted.num_chains < 2:
            logging.info("R-hat needs at least 2 chains; only ESS is checked")
        high_rhat = diagnostics.index[diagnostics["r_hat"] > self.max_rhat].tolist()
        low_ess = diagnostics.index[diagnostics["ess_bulk"] < self.min_ess].tolist()
        if high_rhat: problems.append("R-hat above {} for {}".format(self.max_rhat, ", ".join(high_rhat)))
        if low_ess: problems.append("bulk ESS below {} for {}".format(self.min_ess, ", ".join(low_ess)))
        if fitted.divergences > 0: problems.append("{} divergent transition(s)".format(fitted.divergences))
        fitted.problems = problems
        fitted.reliable = len(problems) == 0
        if not fitted.reliable:
            message = "UNRELIABLE posterior: " + "; ".join(problems)
            logging.warning(message)
            warnings.warn(message, SamplingUnreliable)
        else:
            logging.info("Convergence diagnostics passed")
        return fitted
