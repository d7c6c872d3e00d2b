import os
import logging
from dataclasses import dataclass
from beecv.config import AnalysisConfig
from beecv.traitaggregator import readobservations, summarizespecies, writesummary
from beecv.phylomatrix import readtrees, build_correlation_matrix, writematrix, writetree
from beecv.phylomixedmodel import PhyloMixedModel, ModelFormula, PriorConfig, NumpyroBackend
from beecv.phylosignal import phylosignal, prior_lambda
from beecv.pgls import pgls_lambda
from beecv.ploter import plotlambda

@dataclass
class AnalysisResult:
    summary: object
    correlation: object
    tree: object
    fitted: object = None
    signal: object = None
    pgls: object = None

def outpath(config, name):
    return os.path.join(config.outdir, name)

def prepare(observations, trees, config):
    """
    SpeciesSummary and correlation matrix, written before any sampling
    """
    summary = summarizespecies(observations, columns=config.columns, min_obs=config.min_obs,
                               subsample_size=config.subsample_size, seed=config.seed, ddof=config.ddof)
    correlation, pruned = build_correlation_matrix(trees, summary["species"].astype(str).tolist())
    os.makedirs(config.outdir, exist_ok=True)
    writesummary(summary, output=outpath(config, "Species_Summary.tsv"))
    writematrix(correlation, output=outpath(config, "Phylo_Correlation.tsv"))
    writetree(pruned, output=outpath(config, "Pruned_Tree.nwk"))
    return AnalysisResult(summary=summary, correlation=correlation, tree=pruned)

def makemodel(config, priors=None, backend=None):
    formula = ModelFormula(predictors=(config.predictor,), log_predictors=config.log_predictor)
    if backend is None:
        backend = NumpyroBackend(num_warmup=config.num_warmup, num_samples=config.num_samples, num_chains=config.num_chains,
                                 chain_method=config.chain_method, target_accept=config.target_accept, seed=config.seed)
    return PhyloMixedModel(formula=formula, priors=priors, backend=backend, max_rhat=config.max_rhat, min_ess=config.min_ess)

def fitsignal(result, config, priors=None, backend=None, plot=True):
    model = makemodel(config, priors=priors, backend=backend)
    result.fitted = model.fit(result.summary, result.correlation)
    result.fitted.export_Psamples(output=outpath(config, "Posterior_Samples.tsv"),
                                  output_stats=outpath(config, "Posterior_Samples_Stats.tsv"), per=config.credible_interval)
    result.signal = phylosignal(result.fitted, per=config.credible_interval, prior_draws=config.prior_draws,
                                method=config.signal_method, epsilon=config.signal_epsilon,
                                seed=config.seed, max_evidence_ratio=config.max_evidence_ratio)
    result.signal.write(output=outpath(config, "Phylo_Signal.tsv"))
    if plot:
        plotlambda(result.signal, result.fitted.num_chains, output=outpath(config, "Phylo_Signal.pdf"), per=config.credible_interval,
                   prior_lambda=prior_lambda(result.fitted.priors, n=config.prior_draws, seed=config.seed))
    return result

def run_analysis(trait=None, tree=None, config=None, observations=None, trees=None, priors=None, backend=None, plot=True, pgls=True):
    """
    Full run: species summary, phylogenetic correlation, mixed model and lambda test
    """
    if config is None: config = AnalysisConfig()
    config.validate()
    if observations is None: observations = readobservations(trait, columns=config.columns, sep=config.sep)
    if trees is None: trees = readtrees(tree)
    logging.info("Start phylogenetic partitioning of body-size variation\n...\n")
    result = prepare(observations, trees, config)
    if pgls:
        result.pgls = pgls_lambda(result.summary, result.correlation, predictor=config.predictor)
        result.pgls.to_csv(outpath(config, "PGLS_Lambda.tsv"), header=True, index=False, sep='\t')
    fitsignal(result, config, priors=priors, backend=backend, plot=plot)
    if not result.fitted.reliable:
        logging.warning("Consider re-running with more warmup/samples before trusting these estimates")
    logging.info("Done")
    return result
