# demographics.py
import pandas as pd

# Census age groups: AGEGRP 0 is the county total, 1..18 are 5-year bands
# (1 = 0-4 years, ..., 18 = 85+). The open-ended top band is sampled as 85-89.
AGE_GROUP_YEARS = 5
N_AGE_GROUPS = 18

WEIGHT_CATEGORIES = ("Normal", "Obese")

# Inhalation rate by age (m^3/day per kg body weight), from the EPA Exposure
# Factors Handbook (2011) Table 6-1; "age" is the lower bound of each bracket.
DEFAULT_IR_PARAMS = {
    "age":  [0, 1, 2, 3, 6, 11, 16, 21, 31, 41, 51, 61, 71],
    "mean": [0.5458, 0.5930, 0.8048, 0.5638, 0.5955, 0.4952, 0.4196,
             0.4090, 0.4090, 0.4310, 0.4310, 0.4111, 0.4111],
    "sd":   [0.1412, 0.1270, 0.1618, 0.1100, 0.1140, 0.0930, 0.0734,
             0.0734, 0.0734, 0.0840, 0.0840, 0.0760, 0.0760],
}


def default_ir_params() -> pd.DataFrame:
    return pd.DataFrame(DEFAULT_IR_PARAMS)
