from typing import Any, Dict, List, Sequence

import pandas as pd

from .domain import VariantCounts
from .statmath import normal_cdf, z_statistic


def load_experiment_csv(file_obj) -> pd.DataFrame:
    """
    Read a CSV file object of aggregate counts into a pandas DataFrame.

    Expected columns:
    - variant (e.g. "A", "B")
    - assignments (int); the older "users" header is accepted too
    - conversions (int)
    """
    df = pd.read_csv(file_obj)
    if "assignments" not in df.columns and "users" in df.columns:
        df = df.rename(columns={"users": "assignments"})

    required_cols = {"variant", "assignments", "conversions"}
    if not required_cols.issubset(df.columns):
        missing = required_cols - set(df.columns)
        raise ValueError(f"CSV is missing required columns: {', '.join(sorted(missing))}")

    if (df["assignments"] < 0).any() or (df["conversions"] < 0).any():
        raise ValueError("CSV counts cannot be negative")
    if (df["conversions"] > df["assignments"]).any():
        raise ValueError("CSV has more conversions than assignments for some variant")
    return df


def counts_from_frame(df: pd.DataFrame) -> List[VariantCounts]:
    """One VariantCounts per row, ordered by variant name."""
    df = df.assign(variant=df["variant"].astype(str)).sort_values("variant")
    return [
        VariantCounts(
            variant_id=None,
            name=row.variant,
            assignments=int(row.assignments),
            conversions=int(row.conversions),
        )
        for row in df.itertuples(index=False)
    ]


def two_sided_p_value(control: VariantCounts, variant: VariantCounts) -> float:
    """
    Two-proportion z-test for `variant` vs `control`.
    Returns 1.0 when either side has no users (cannot test).
    """
    if control.assignments == 0 or variant.assignments == 0:
        return 1.0
    z = z_statistic(variant.rate, variant.assignments, control.rate, control.assignments)
    return 2 * (1 - normal_cdf(abs(z)))


def compute_conversion_stats(counts: Sequence[VariantCounts]) -> Dict[str, Dict[str, Any]]:
    """
    Conversion stats for each variant, compared against the first (control).

    Returns a dict like:
    {
      "A": {"assignments": 1000, "conversions": 120, "conversion_rate": 0.12},
      "B": {"assignments": 980, "conversions": 150, "conversion_rate": 0.153,
            "uplift": 0.033, "z_statistic": 2.1, "p_value": 0.04},
    }
    """
    stats: Dict[str, Dict[str, Any]] = {}
    for c in counts:
        stats[c.name] = {
            "variant_id": c.variant_id,
            "assignments": c.assignments,
            "conversions": c.conversions,
            "conversion_rate": c.rate,
        }

    if len(counts) < 2:
        return stats

    control = counts[0]
    for c in counts[1:]:
        row = stats[c.name]
        row["uplift"] = c.rate - control.rate
        if control.assignments > 0 and c.assignments > 0:
            row["z_statistic"] = z_statistic(c.rate, c.assignments, control.rate, control.assignments)
        else:
            row["z_statistic"] = None
        row["p_value"] = two_sided_p_value(control, c)

    return stats
