import click
import logging
from rich.logging import RichHandler
from beecv.config import load_config
from beecv.errors import BeecvError

def getconfig(kwargs):
    config_path = kwargs.pop('config', None)
    try:
        return load_config(config_path, **kwargs)
    except BeecvError as e:
        raise click.ClickException(str(e))

@click.group(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--verbosity', '-v', type=click.Choice(['info', 'debug']), default='info', help="Verbosity level, default = info.")
def cli(verbosity):
    """
    beecv - intraspecific body-size variation and phylogenetic signal in bees
    """
    logging.basicConfig(
        format='%(message)s',
        handlers=[RichHandler()],
        datefmt='%H:%M:%S',
        level=verbosity.upper())
    pass

@cli.command(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--trait', '-ta', required=True, help='Observation table (one row per bee-flower interaction)')
@click.option('--config', '-c', default=None, help='YAML configuration file')
@click.option('--sep', default=None, help='Field delimiter of the observation table')
@click.option('--min_obs', '-m', default=None, type=int, help='Minimum observations per species [default: 20]')
@click.option('--subsample_size', '-s', default=None, type=int, help='Rows drawn per species [default: 20]')
@click.option('--seed', default=None, type=int, help='Random seed [default: 1]')
@click.option('--outdir', '-o', default=None, help='Output directory [default: .]')
def summarize(trait, **kwargs):
    """
    Per-species CV4 summary
    """
    import os
    from beecv.traitaggregator import readobservations, summarizespecies, writesummary
    config = getconfig(kwargs)
    try:
        df = readobservations(trait, columns=config.columns, sep=config.sep)
        summary = summarizespecies(df, columns=config.columns, min_obs=config.min_obs, subsample_size=config.subsample_size, seed=config.seed, ddof=config.ddof)
    except BeecvError as e:
        raise click.ClickException(str(e))
    os.makedirs(config.outdir, exist_ok=True)
    writesummary(summary, output=os.path.join(config.outdir, "Species_Summary.tsv"))

@cli.command(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--tree', '-tr', required=True, help='Newick file with one or more trees')
@click.option('--summary', '-su', required=True, help='Species summary file (species column used as target set)')
@click.option('--output', '-o', default='Phylo_Correlation.tsv', show_default=True, help='Output file name')
def phylomatrix(tree, summary, output):
    """
    Pruned consensus Brownian-motion correlation matrix
    """
    import pandas as pd
    from beecv.phylomatrix import readtrees, build_correlation_matrix, writematrix
    df = pd.read_csv(summary, header=0, sep='\t')
    if "species" not in df.columns:
        raise click.ClickException("{} has no species column".format(summary))
    species = df["species"].astype(str).tolist()
    try:
        correlation, _ = build_correlation_matrix(readtrees(tree), species)
    except BeecvError as e:
        raise click.ClickException(str(e))
    writematrix(correlation, output=output)

@cli.command(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--trait', '-ta', required=True, help='Observation table (one row per bee-flower interaction)')
@click.option('--tree', '-tr', required=True, help='Newick file with one or more trees')
@click.option('--config', '-c', default=None, help='YAML configuration file')
@click.option('--predictor', '-p', default=None, help='Species summary column used as fixed effect [default: n_sites]')
@click.option('--num_warmup', default=None, type=int, help='NUTS warmup iterations per chain [default: 1000]')
@click.option('--num_samples', default=None, type=int, help='NUTS samples per chain [default: 1000]')
@click.option('--num_chains', default=None, type=int, help='Number of chains [default: 4]')
@click.option('--signal_method', default=None, type=click.Choice(['conditional', 'mass', 'kde']), help='Savage-Dickey estimator for lambda > 0 [default: conditional]')
@click.option('--signal_epsilon', default=None, type=float, help='Interval width of the mass estimator [default: 0.01]')
@click.option('--seed', default=None, type=int, help='Random seed [default: 1]')
@click.option('--outdir', '-o', default=None, help='Output directory [default: .]')
@click.option('--noplot', is_flag=True, help='Skip the posterior lambda plot')
def fit(trait, tree, noplot, **kwargs):
    """
    Full analysis: summary, correlation matrix, phylogenetic mixed model and lambda test
    """
    from beecv.pipeline import run_analysis
    config = getconfig(kwargs)
    try:
        result = run_analysis(trait=trait, tree=tree, config=config, plot=not noplot)
    except BeecvError as e:
        raise click.ClickException(str(e))
    if not result.fitted.reliable:
        click.echo("WARNING: posterior flagged UNRELIABLE ({})".format("; ".join(result.fitted.problems)), err=True)

@cli.command(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--summary', '-su', required=True, help='Species summary file')
@click.option('--matrix', '-ma', required=True, help='Correlation matrix file')
@click.option('--predictor', '-p', default='n_sites', show_default=True, help='Predictor column')
@click.option('--output', '-o', default='PGLS_Lambda.tsv', show_default=True, help='Output file name')
def pgls(summary, matrix, predictor, output):
    """
    Maximum-likelihood PGLS with Pagel's lambda
    """
    import pandas as pd
    from beecv.phylomatrix import readmatrix
    from beecv.pgls import pgls_lambda
    try:
        df = pgls_lambda(pd.read_csv(summary, header=0, sep='\t'), readmatrix(matrix), predictor=predictor)
    except BeecvError as e:
        raise click.ClickException(str(e))
    df.to_csv(output, header=True, index=False, sep='\t')

if __name__ == "__main__":
    cli()
