import sys
import time
import logging
import threading
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Tuple

import numpy as np
import pandas as pd
import polars as pl

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger("proteodiff")

_thread_local = threading.local()


def _indent() -> str:
    return " " * getattr(_thread_local, "indent", 0)


@contextmanager
def log_indent():
    if not hasattr(_thread_local, "indent"):
        _thread_local.indent = 0
    _thread_local.indent += 2
    try:
        yield
    finally:
        _thread_local.indent -= 2


def log_info(msg: str) -> None:
    logger.info(_indent() + msg)


def log_warning(msg: str) -> None:
    logger.warning(_indent() + msg)


def log_time(task_name):
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            indent = getattr(_thread_local, "indent", 0)
            logger.info(" " * indent + f"{task_name} started")
            with log_indent():
                start_time = time.time()
                result = func(*args, **kwargs)
                duration = time.time() - start_time
                logger.info(" " * indent + f"{task_name} completed, took {duration:.2f} seconds.")
            return result
        return wrapper
    return decorator


def polars_matrix_to_numpy(df: pl.DataFrame, index_col: str = "INDEX") -> Tuple[np.ndarray, pd.Index]:
    """
    Converts a Polars matrix with an explicit index column (e.g., 'INDEX') to:
    - NumPy matrix (rows = features, cols = samples)
    - Feature index (row labels for AnnData.var)

    Args:
        df (pl.DataFrame): Input matrix with index column.
        index_col (str): The name of the column to use as index (default: 'INDEX').

    Returns:
        Tuple[np.ndarray, pd.Index]: Matrix as numpy array, and index labels.
    """
    if index_col not in df.columns:
        raise ValueError(f"Expected index column '{index_col}' not found in DataFrame.")

    sample_cols = [col for col in df.columns if col != index_col]
    matrix = df.select(sample_cols).to_numpy().astype(float)
    index = pd.Index(df.get_column(index_col).cast(pl.Utf8).to_list())

    return matrix, index


def load_contaminant_accessions(fasta_path: str | Path) -> set[str]:
    accessions = set()
    with open(fasta_path, "r") as f:
        for line in f:
            if line.startswith(">"):
                fields = line[1:].split("|")
                acc = fields[1] if len(fields) > 1 else fields[0].split()[0]  # sp|Q13515|... or bare id
                accessions.add(acc.strip())
    return accessions
