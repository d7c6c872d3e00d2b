import logging
import numpy as np
import pandas as pd
from beecv.config import TraitColumns
from beecv.cvestimator import bao_cv4, naive_cv
from beecv.errors import InsufficientSampleSize, ModelSpecificationError

SUMMARY_COLUMNS = ["species", "cv4", "n_sites", "n_obs", "cv_naive", "mean_itd", "n_partners", "n_blocks", "n_localities"]

def readobservations(path, columns=None, sep='\t'):
    """
    Load the bee-flower interaction table
    """
    if columns is None: columns = TraitColumns()
    df = pd.read_csv(path, header=0, sep=sep)
    checkschema(df, columns)
    logging.info("Loaded {} observations of {} species from {}".format(len(df), df[columns.species].nunique(), path))
    return df

def checkschema(df, columns):
    missing = [col for col in columns.required() if col not in df.columns]
    if missing:
        raise ModelSpecificationError("Observation table lacks columns: {}".format(", ".join(missing)))

def subsamplegroup(species, group, subsample_size, rng):
    # duplicated records do not count towards the subsample
    distinct = len(group.drop_duplicates())
    if distinct < subsample_size:
        raise InsufficientSampleSize("Species {} has {} distinct rows but subsample_size is {}".format(species, distinct, subsample_size))
    chosen = rng.choice(len(group), size=subsample_size, replace=False)
    return group.iloc[np.sort(chosen)]

def summarizespecies(observations, columns=None, min_obs=20, subsample_size=20, seed=1, ddof=0):
    """
    One row per species with at least min_obs observations.
    The generator is seeded once and consumed by species in sorted order.
    """
    if columns is None: columns = TraitColumns()
    checkschema(observations, columns)
    if min_obs < subsample_size:
        raise InsufficientSampleSize("min_obs ({}) is smaller than subsample_size ({})".format(min_obs, subsample_size))
    rng = np.random.default_rng(seed)
    n_obs = observations.groupby(columns.species, sort=True).size()
    retained = set(n_obs[n_obs >= min_obs].index)
    logging.info("{} of {} species have at least {} observations".format(len(retained), len(n_obs), min_obs))
    rows = []
    for species, group in observations.groupby(columns.species, sort=True):
        if species not in retained: continue
        sub = subsamplegroup(species, group, subsample_size, rng)
        itd = sub[columns.itd].to_numpy(dtype=float)
        rows.append({"species": species,
                     "cv4": bao_cv4(itd, ddof=ddof),
                     "n_sites": int(sub[columns.site].nunique()),
                     "n_obs": int(n_obs[species]),
                     "cv_naive": naive_cv(itd, ddof=ddof),
                     "mean_itd": float(np.mean(itd)),
                     "n_partners": int(sub[columns.partner].nunique()),
                     "n_blocks": int(sub[columns.block].nunique()),
                     # localities are nested within blocks
                     "n_localities": int(sub[[columns.block, columns.locality]].drop_duplicates().shape[0])})
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)

def writesummary(summary, output="Species_Summary.tsv"):
    summary.to_csv(output, header=True, index=False, sep='\t')
    logging.info("Species summary written to {}".format(output))
