"""
FILE: utils/design.py
----------------------
Structural helpers over a ModelDesign + DataFrame — column typing and
fixed-effect parameter counting. Computable without fitting anything.
"""

import pandas as pd

from regression_remedy.schemas.model import ModelDesign


def is_categorical(series: pd.Series) -> bool:
    return (
        not pd.api.types.is_numeric_dtype(series)
        or pd.api.types.is_bool_dtype(series)
    )


def categorical_predictors(data: pd.DataFrame, design: ModelDesign) -> list[str]:
    return [c for c in design.predictors if is_categorical(data[c])]


def treatment_factors(data: pd.DataFrame, design: ModelDesign) -> list[str]:
    """Declared treatment factors, or every categorical predictor."""
    if design.treatment_factors is not None:
        return list(design.treatment_factors)
    return categorical_predictors(data, design)


def count_fixed_parameters(data: pd.DataFrame, design: ModelDesign) -> int:
    """Intercept + one per numeric predictor + (levels - 1) per categorical predictor."""
    count = 1
    for col in design.predictors:
        if is_categorical(data[col]):
            count += max(int(data[col].nunique(dropna=True)) - 1, 0)
        else:
            count += 1
    return count


def missing_columns(data: pd.DataFrame, design: ModelDesign) -> list[str]:
    wanted = [design.response, *design.predictors]
    wanted += [c for c in (design.unit_key, design.replicate_key, design.variance_group) if c]
    wanted += list(design.treatment_factors or [])
    return [c for c in dict.fromkeys(wanted) if c not in data.columns]
