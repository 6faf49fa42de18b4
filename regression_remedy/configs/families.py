"""
FILE: configs/families.py
--------------------------
Declarative mapping from a response's declared support to the
distributional family + link the Family Advisor recommends.

The mapping is config, not inference: the caller declares the support
kind; the data are only checked for consistency with it.

Each entry has:
  family:       FamilyKind to fit
  link:         LinkKind to use with it
  description:  Plain English reason shown in the recommendation
"""

from regression_remedy.schemas.model import FamilyKind, LinkKind, SupportKind

FAMILY_REGISTRY: dict[SupportKind, dict] = {

    SupportKind.BINARY: {
        "family":      FamilyKind.BINOMIAL,
        "link":        LinkKind.LOGIT,
        "description": "Binary (0/1) response — fit a Binomial GLM with a logit link "
                       "instead of transforming the response.",
    },

    SupportKind.COUNT: {
        "family":      FamilyKind.POISSON,
        "link":        LinkKind.LOG,
        "description": "Count response — fit a Poisson GLM with a log link; its variance "
                       "grows with the mean, which a Gaussian model cannot capture.",
    },

    SupportKind.PROPORTION: {
        "family":      FamilyKind.BETA,
        "link":        LinkKind.LOGIT,
        "description": "Proportion strictly inside (0, 1) — fit a Beta regression with a "
                       "logit link so predictions stay inside the unit interval.",
    },

    SupportKind.CONTINUOUS: {
        "family":      FamilyKind.GAUSSIAN,
        "link":        LinkKind.IDENTITY,
        "description": "Continuous response — keep the Gaussian family with identity link.",
    },
}
