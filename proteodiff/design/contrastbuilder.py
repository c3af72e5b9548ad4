import itertools
from typing import List, Optional, Sequence, Tuple

import numpy as np

from proteodiff.design.designmatrixbuilder import DesignSpec


def parse_contrast_name(name: str) -> Tuple[str, str]:
    """Split 'A_vs_B' (or 'A_v_B') into (A, B)."""
    s = str(name)
    if "_vs_" in s:
        a, b = s.split("_vs_", 1)
    elif "_v_" in s:
        a, b = s.split("_v_", 1)
    else:
        raise ValueError(f"Contrast '{s}' must use _v_ or _vs_ as separator")
    return a.strip(), b.strip()


class ContrastBuilder:
    def __init__(self, design: DesignSpec, baseline: Optional[str] = None):
        """
        Parameters:
        - design: DesignSpec (treatment coded, reference level first)
        - baseline: str (optional), level the default contrasts compare against
        """
        self.design = design
        self.levels = list(design.levels)
        self.baseline = baseline or design.reference
        if self.baseline not in self.levels:
            raise ValueError(f"Baseline '{self.baseline}' not found in Condition levels {self.levels}")

    def _contrast_vector(self, group1: str, group2: str) -> np.ndarray:
        """
        Create contrast vector for group1 - group2
        """
        vec = np.zeros(self.design.n_coef)
        # Intercept is always 0; the reference level has no column of its own
        i1 = self.design.coef_index(group1)
        i2 = self.design.coef_index(group2)
        if i1 is not None:
            vec[i1] += 1
        if i2 is not None:
            vec[i2] -= 1
        return vec

    def _stack(self, pairs: Sequence[Tuple[str, str]]) -> Tuple[np.ndarray, List[str]]:
        if not pairs:
            raise ValueError("No contrasts to build: need at least two condition levels.")
        contrast_matrix = np.vstack([self._contrast_vector(g1, g2) for g1, g2 in pairs]).T  # (p x m)
        contrast_names = [f"{g1}_vs_{g2}" for g1, g2 in pairs]
        return contrast_matrix, contrast_names

    def make_baseline_contrasts(self):
        """Every level against the baseline (e.g. "B_vs_A", "C_vs_A")."""
        pairs = [(lvl, self.baseline) for lvl in self.levels if lvl != self.baseline]
        return self._stack(pairs)

    def make_all_pairwise_contrasts(self):
        """
        Generate all pairwise contrasts between levels (not just vs baseline)
        Returns:
        - contrast_matrix: np.ndarray (p x m)
        - contrast_names: list of str (e.g., "A_vs_B")
        """
        return self._stack(list(itertools.combinations(self.levels, 2)))

    def make_named_contrasts(self, names: Sequence[str]):
        """Contrasts from explicit 'A_vs_B' / 'A_v_B' names."""
        pairs = []
        for name in names:
            a, b = parse_contrast_name(name)
            if a not in self.levels or b not in self.levels:
                raise ValueError(f"only_contrasts '{name}': conditions must be in {self.levels}")
            if a == b:
                raise ValueError(f"Contrast '{name}' compares a condition with itself.")
            pairs.append((a, b))
        return self._stack(pairs)

    def from_config(self, analysis_cfg: Optional[dict] = None):
        """Contrasts selected by the `analysis` config section.

        `only_contrasts` takes precedence, then `only_against`, then `contrasts`
        ("reference", the default, or "pairwise").
        """
        analysis_cfg = analysis_cfg or {}
        only_list = analysis_cfg.get("only_contrasts") or []
        if isinstance(only_list, str):
            only_list = [only_list]
        if only_list:
            return self.make_named_contrasts(only_list)

        base = analysis_cfg.get("only_against")
        if base is not None:
            return ContrastBuilder(self.design, baseline=str(base)).make_baseline_contrasts()

        mode = (analysis_cfg.get("contrasts") or "reference").lower()
        if mode == "reference":
            return self.make_baseline_contrasts()
        if mode == "pairwise":
            return self.make_all_pairwise_contrasts()
        raise ValueError(f"Unknown contrasts mode '{mode}'. Use 'reference' or 'pairwise'.")
