import logging
import numpy as np
from beecv.errors import InsufficientSampleSize, DegenerateInput

def checkmeasurements(measurements):
    x = np.asarray(measurements, dtype=float).ravel()
    if len(x) < 2:
        raise InsufficientSampleSize("At least 2 measurements are needed, got {}".format(len(x)))
    if not np.all(np.isfinite(x)):
        raise DegenerateInput("Measurements contain non-finite values")
    return x

def moments(x, ddof=0):
    """
    Mean, standard deviation, and standardized third and fourth moments
    """
    n = len(x)
    mean = np.mean(x)
    if mean == 0:
        raise DegenerateInput("Mean of measurements is zero")
    sd = np.sqrt(np.sum(np.square(x - mean)) / (n - ddof))
    if sd == 0:
        raise DegenerateInput("Measurements have zero variance")
    z = (x - mean) / sd
    gamma1 = np.sum(z**3) / n
    gamma2 = np.sum(z**4) / n
    return mean, sd, gamma1, gamma2

def naive_cv(measurements, ddof=0):
    x = checkmeasurements(measurements)
    n = len(x)
    mean = np.mean(x)
    if mean == 0:
        raise DegenerateInput("Mean of measurements is zero")
    cv2 = (np.sum(np.square(x - mean)) / (n - ddof)) / mean**2
    return float(np.sqrt(cv2))

def bao_cv4(measurements, ddof=0):
    """
    Bao's second-order bias-corrected coefficient of variation (CV4)

    cv4 = cv1 - (cv1^3/N - cv1/(4N) - cv1^2*gamma1/(2N) - cv1*gamma2/(8N))
    with the same variance divisor (N - ddof) used for cv1, gamma1 and gamma2.
    """
    x = checkmeasurements(measurements)
    # sort first so that summation order does not depend on input order
    x = np.sort(x)
    n = len(x)
    mean, sd, gamma1, gamma2 = moments(x, ddof=ddof)
    cv1 = np.sqrt(sd**2 / mean**2)
    bias2 = cv1**3/n - cv1/(4*n) - cv1**2*gamma1/(2*n) - cv1*gamma2/(8*n)
    cv4 = cv1 - bias2
    logging.debug("N {}, naive CV {}, CV4 {}".format(n, cv1, cv4))
    return float(cv4)
