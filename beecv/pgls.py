import logging
import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.optimize import minimize_scalar
from scipy.stats import chi2
from beecv.errors import ModelSpecificationError

def givelamda(cov_matrix, lamda=1):
    diag = np.diag(np.diag(cov_matrix))
    return lamda * cov_matrix + (1 - lamda) * diag

def GLSfit(lambdaval, cov_matrix, x, y):
    X = sm.add_constant(x, has_constant='add')
    model = sm.GLS(y, X, sigma=givelamda(cov_matrix, lamda=lambdaval))
    return model.fit()

def GLSlikelihood(lambdaval, cov_matrix, x, y):
    return -GLSfit(lambdaval, cov_matrix, x, y).llf

def MLElambda_residuals(cov_matrix, x, y):
    result = minimize_scalar(
        GLSlikelihood,
        bounds=(0, 1), # Lambda is constrained between 0 and 1
        args=(cov_matrix, x, y),
        method='bounded')
    return result.x, -result.fun

def alignxy(summary, correlation, response="cv4", predictor="n_sites", group="species", log_response=True):
    for col in (response, predictor, group):
        if col not in summary.columns:
            raise ModelSpecificationError("Column {} is absent".format(col))
    species = [str(sp) for sp in summary[group]]
    labels = [str(sp) for sp in correlation.index]
    if set(species) != set(labels):
        raise ModelSpecificationError("Species keys differ between data and correlation matrix")
    C = correlation.copy(); C.index = labels; C.columns = labels
    y = summary[response].to_numpy(dtype=float)
    if log_response: y = np.log(y)
    x = summary[predictor].to_numpy(dtype=float)
    return C.loc[species, species].to_numpy(dtype=float), x, y

def pgls_lambda(summary, correlation, response="cv4", predictor="n_sites", group="species", log_response=True):
    """
    PGLS with Pagel's lambda fitted by maximum likelihood and a likelihood
    ratio test against lambda = 0
    """
    cov_matrix, x, y = alignxy(summary, correlation, response=response, predictor=predictor, group=group, log_response=log_response)
    mle_lambda, ll = MLElambda_residuals(cov_matrix, x, y)
    null_ll = -GLSlikelihood(0, cov_matrix, x, y)
    LR_stat = max(2 * (ll - null_ll), 0.0)
    p_value = chi2.sf(LR_stat, df=1)
    results = GLSfit(mle_lambda, cov_matrix, x, y)
    GLS_intercept, GLS_slope = results.params
    row = {"lambda": mle_lambda, "Intercept": GLS_intercept, "b_{}".format(predictor): GLS_slope,
           "Slope P-value": results.pvalues[1], "Log-likelihood": ll, "LR": LR_stat, "Lambda P-value": p_value}
    logging.info("PGLS Pagel's λ {} (P-value: {:.5f})".format(mle_lambda, p_value))
    return pd.DataFrame([row])

def simulate_lambda_response(correlation, lambdaval=1, x=None, intercept=0.2, slope=1.5, sigma2=1.0, seed=1):
    """
    Simulate a response with known slope and residual lambda, for benchmarking
    """
    rng = np.random.default_rng(seed)
    cov_matrix = correlation.to_numpy(dtype=float)
    n = cov_matrix.shape[0]
    if x is None: x = rng.multivariate_normal(np.zeros(n), cov_matrix)
    residual = rng.multivariate_normal(np.zeros(n), sigma2 * givelamda(cov_matrix, lamda=lambdaval))
    y = intercept + slope * np.asarray(x) + residual
    return pd.DataFrame({"species": list(correlation.index), "x": x, "y": y})
