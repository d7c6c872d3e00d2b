import numpy as np
import pandas as pd
import arviz as az

STATS_COLUMNS = ["Mean", "Median", "Equal-tail lower CI", "Equal-tail upper CI", "HPD lower CI", "HPD upper CI", "ESS"]

def calculateHPD(train_in, per):
    """
    Narrowest interval holding per% of the samples, returned as (upper, lower)
    """
    sorted_in = np.sort(np.asarray(train_in, dtype=float))
    n = len(sorted_in)
    cutoff = int(np.ceil(per*n/100))
    if cutoff >= n: return sorted_in[-1], sorted_in[0]
    widths = sorted_in[cutoff-1:] - sorted_in[:n-cutoff+1]
    lower = int(np.argmin(widths))
    return sorted_in[lower+cutoff-1], sorted_in[lower]

def bychain(samples, num_chains):
    samples = np.asarray(samples, dtype=float)
    return samples.reshape(int(num_chains), int(len(samples)/num_chains))

def compute_rhat_az(samples, num_chains):
    posterior_dict = {"para": bychain(samples, num_chains)}
    idata = az.from_dict(posterior=posterior_dict)
    return float(az.rhat(idata)["para"].item())

def compute_ess_az(samples, num_chains):
    return float(az.ess(bychain(samples, num_chains)))

def emptystats(num_chains):
    dic_stats = {col: [] for col in STATS_COLUMNS}
    if num_chains > 1: dic_stats.update({"R_hat": []})
    return dic_stats

def addstats(dic_stats, samples, num_chains, per=90):
    samples = np.asarray(samples, dtype=float)
    tail = (100 - per) / 2
    if num_chains > 1: dic_stats["R_hat"] += [compute_rhat_az(samples, num_chains)]
    dic_stats["Mean"] += [samples.mean()]; dic_stats["Median"] += [np.median(samples)]
    dic_stats["Equal-tail lower CI"] += [np.percentile(samples, tail)]; dic_stats["Equal-tail upper CI"] += [np.percentile(samples, 100 - tail)]
    HPD_upper, HPD_lower = calculateHPD(samples, per)
    dic_stats["HPD lower CI"] += [HPD_lower]; dic_stats["HPD upper CI"] += [HPD_upper]
    dic_stats["ESS"] += [compute_ess_az(samples, num_chains)]
    return dic_stats

def posteriorstats(samples_dic, num_chains, per=90):
    """
    Summary table of flattened posterior samples, one row per parameter
    """
    dic_stats = emptystats(num_chains)
    indexes = []
    for name, samples in samples_dic.items():
        dic_stats = addstats(dic_stats, samples, num_chains, per=per); indexes += [name]
    df_stats = pd.DataFrame.from_dict(dic_stats)
    df_stats.index = indexes
    return df_stats
