
# ─────────────────────────────────────────────
# CONSTANTS
# Defaults for RemediationConfig; every value can be overridden per run.
# ─────────────────────────────────────────────

MIN_RESIDUALS                      = 3       # fewer residuals → shape cannot be assessed
SKEWNESS_THRESHOLD                 = 0.5     # |skewness| above this → right/left skew
KURTOSIS_THRESHOLD                 = 1.0     # |excess kurtosis| above this → over/under-dispersed
BIMODALITY_THRESHOLD               = 5 / 9   # Sarle's coefficient above this → possibly bimodal

HETEROSCEDASTICITY_RATIO_THRESHOLD = 4.0     # max/min group variance above this → candidate violation
GROUP_SIZE_TOLERANCE               = 0.20    # relative group-size spread tolerated before ratio matters

MIN_RANDOM_EFFECT_LEVELS           = 5       # fewer units → random effect variance is poorly estimated
POWER_CANDIDATES                   = (2, 3, 4)
VARIANCE_FLOOR                     = 1e-8    # predicted variance at or below this → unstable weights

MAX_ITERATIONS                     = 10
DEFAULT_FIT_TIMEOUT                = 60.0    # seconds
NORMALITY_ALPHA                    = 0.05
SHAPIRO_MAX_N                      = 5000    # above this use D'Agostino-Pearson instead of Shapiro-Wilk
