import logging
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd
import numpy as np
from scipy import stats
from beecv.bayesstats import addstats, emptystats

class Tracer:
    def __init__(self, data=None, usedata=[], n_row=1, n_col=1, n_chains=1, fs=(5,5)):
        """
        :data is a DataFrame (or a *.tsv file) with parameters as columns and iterations as the index
        """
        if isinstance(data, pd.DataFrame): self.data = data
        else: self.data = pd.read_csv(data, header=0, index_col=0, sep='\t')
        self.cols = [col for col in usedata]
        self.n_row = n_row; self.n_col = n_col; self.n_chains = n_chains; self.figsize = fs
        if len(usedata) > n_row*n_col:
            raise ValueError("{} parameters do not fit a {}x{} grid".format(len(usedata), n_row, n_col))
        for col in usedata:
            if col not in self.data.columns: raise KeyError("No posterior samples for {}".format(col))

    def basic_draw(self, n_bins=50, bw_method='silverman', per=90, decimal=3, prior=None):
        fig, axes = plt.subplots(self.n_row, self.n_col, figsize=self.figsize)
        self.fig = fig
        axes = np.atleast_1d(axes).ravel()
        self.axes = axes
        y = lambda x: format(float(x), f".{decimal}f")
        for col, ax in zip(self.cols, axes):
            samples = np.array(self.data.loc[:, col])
            dic_stats = addstats(emptystats(self.n_chains), samples, self.n_chains, per=per)
            mini_, maxi_ = np.min(samples), np.max(samples)
            if maxi_ == mini_: maxi_, mini_ = maxi_ + 0.5, mini_ - 0.5
            Hs, Bins, patches = ax.hist(samples, bins=np.linspace(mini_, maxi_, num=n_bins), color="gray", alpha=0.8, rwidth=0.8, label='Posterior samples')
            scaling = np.sum(Hs)*(maxi_-mini_)/n_bins
            kde_x = np.linspace(mini_, maxi_, num=n_bins*10)
            if np.ptp(samples) > 0:
                kde_y = stats.gaussian_kde(samples, bw_method=bw_method).pdf(kde_x)
                ax.plot(kde_x, kde_y*scaling, color="black", alpha=0.8, ls='-', lw=1, label='KDE curve')
                mode, _ = kde_mode(kde_x, kde_y)
                ax.axvline(x=mode, color="k", alpha=0.8, ls='-', lw=1, label="Mode: {}".format(y(mode)))
            if prior is not None and col in prior:
                prior_y = stats.gaussian_kde(prior[col], bw_method=bw_method).pdf(kde_x)
                ax.plot(kde_x, prior_y*scaling, color="tab:blue", alpha=0.8, ls='--', lw=1, label='Prior')
            ax.axvline(x=dic_stats["Mean"][0], color="k", alpha=0.8, ls=':', lw=1, label="Mean: {}".format(y(dic_stats["Mean"][0])))
            ax.axvline(x=dic_stats["Median"][0], color="k", alpha=0.8, ls='--', lw=1, label="Median: {}".format(y(dic_stats["Median"][0])))
            ax.axvline(x=dic_stats["Equal-tail lower CI"][0], color="k", alpha=0.8, ls='-.', lw=1, label="Equal-tail {}% CI: {}-{}".format(per, y(dic_stats["Equal-tail lower CI"][0]), y(dic_stats["Equal-tail upper CI"][0])))
            ax.axvline(x=dic_stats["Equal-tail upper CI"][0], color="k", alpha=0.8, ls='-.', lw=1)
            ax.axvline(x=dic_stats["HPD lower CI"][0], color="k", alpha=0.8, ls=(0,(3,1,1,1)), lw=1, label="HPD {}% CI: {}-{}".format(per, y(dic_stats["HPD lower CI"][0]), y(dic_stats["HPD upper CI"][0])))
            ax.axvline(x=dic_stats["HPD upper CI"][0], color="k", alpha=0.8, ls=(0,(3,1,1,1)), lw=1)
            ax.plot([], [], color='k', label='ESS: {}'.format(y(dic_stats["ESS"][0])), lw=1)
            if self.n_chains > 1: ax.plot([], [], color='k', label='R_hat: {}'.format(y(dic_stats["R_hat"][0])), lw=1)
            ax.legend(loc=0, fontsize=8, frameon=False)
            ax.set_xlabel(col); ax.set_ylabel("Number of samples")
        return self

    def saveplot(self, output="Posterior_Samples.pdf", **kwargs):
        self.fig.tight_layout()
        self.fig.savefig(output, **kwargs)
        plt.close(self.fig)
        logging.info("Posterior plot saved to {}".format(output))

def kde_mode(kde_x, kde_y):
    maxy_iloc = np.argmax(kde_y)
    mode = kde_x[maxy_iloc]
    return mode, max(kde_y)

def plotlambda(result, num_chains, output="Phylo_Signal.pdf", per=90, prior_lambda=None):
    df = pd.DataFrame({"lambda": result.lambda_draws})
    prior = None if prior_lambda is None else {"lambda": prior_lambda}
    Tracer(data=df, usedata=["lambda"], n_chains=num_chains, fs=(6,5)).basic_draw(per=per, prior=prior).saveplot(output)
