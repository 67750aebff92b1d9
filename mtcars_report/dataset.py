#!/usr/bin/env python3
"""
Bundled dataset access and the error taxonomy shared by the report pipeline.

The dataset is the classic 1974 Motor Trend road-test table: 32 car models,
11 numeric attributes. It ships with the package as data/mtcars.csv and is
read-only for the lifetime of a run.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_DATASET_PATH = Path(__file__).resolve().parent / "data" / "mtcars.csv"

# Canonical column order of the raw table.
MTCARS_COLUMNS = (
    "mpg",
    "cyl",
    "disp",
    "hp",
    "drat",
    "wt",
    "qsec",
    "vs",
    "am",
    "gear",
    "carb",
)
EXPECTED_ROWS = 32
INDEX_NAME = "model"

RESPONSE = "mpg"
TRANSMISSION = "am"

# Human-readable names for report tables and plot axes.
COLUMN_DESCRIPTIONS = {
    "mpg": "Miles/(US) gallon",
    "cyl": "Number of cylinders",
    "disp": "Displacement (cu.in.)",
    "hp": "Gross horsepower",
    "drat": "Rear axle ratio",
    "wt": "Weight (1000 lbs)",
    "qsec": "1/4 mile time",
    "vs": "Engine (0 = V-shaped, 1 = straight)",
    "am": "Transmission",
    "gear": "Number of forward gears",
    "carb": "Number of carburetors",
}


class AnalysisError(Exception):
    """Base exception for report pipeline failures."""

    pass


class DataLoadError(AnalysisError):
    """Raised when the bundled dataset is missing or malformed."""

    pass


class RankDeficiencyError(AnalysisError):
    """Raised when a candidate design matrix is not full column rank."""

    pass


class EmptyGroupError(AnalysisError):
    """Raised when a comparison group has fewer than two observations."""

    pass


class ModelSelectionError(AnalysisError):
    """Raised when no candidate model satisfies the selection rule."""

    pass


class DatasetReader:
    """
    Reads and validates the road-test table from a CSV file.

    The first CSV column holds the car model name and becomes the index; the
    remaining columns must match MTCARS_COLUMNS exactly and in order.
    """

    def __init__(self, file_path: Union[str, Path, None] = None) -> None:
        """
        Args:
            file_path: CSV to read. Defaults to the copy bundled with the package.

        Raises:
            DataLoadError: If the path does not exist or is not a file.
        """
        self.file_path = Path(file_path) if file_path else DEFAULT_DATASET_PATH
        if not self.file_path.exists():
            raise DataLoadError(f"Dataset file not found: {self.file_path}")
        if not self.file_path.is_file():
            raise DataLoadError(f"Dataset path is not a file: {self.file_path}")

    def read(self) -> pd.DataFrame:
        """
        Read the CSV and return the validated raw table.

        Raises:
            DataLoadError: If the file cannot be parsed or fails validation.
        """
        try:
            df = pd.read_csv(self.file_path, index_col=0)
        except (pd.errors.EmptyDataError, pd.errors.ParserError, UnicodeDecodeError) as e:
            raise DataLoadError(f"Error reading dataset {self.file_path}: {e}") from e

        df.index.name = INDEX_NAME
        self.validate(df)
        return df.astype(float)

    @staticmethod
    def validate(df: pd.DataFrame) -> None:
        """
        Check shape, column identifiers, numeric content and the 0/1 indicators.

        Raises:
            DataLoadError: On the first violation found.
        """
        columns = tuple(str(c) for c in df.columns)
        if columns != MTCARS_COLUMNS:
            raise DataLoadError(
                f"Unexpected dataset columns {list(columns)}; "
                f"expected {list(MTCARS_COLUMNS)}"
            )
        if len(df) != EXPECTED_ROWS:
            raise DataLoadError(
                f"Dataset must contain {EXPECTED_ROWS} rows; found {len(df)}"
            )

        numeric = df.apply(pd.to_numeric, errors="coerce")
        bad = numeric.isna() | ~np.isfinite(numeric)
        if bad.to_numpy().any():
            offending = [c for c in numeric.columns if bad[c].any()]
            raise DataLoadError(
                f"Dataset has missing or non-numeric values in columns: {offending}"
            )

        for indicator in ("vs", "am"):
            levels = set(numeric[indicator].unique().tolist())
            if not levels <= {0.0, 1.0}:
                raise DataLoadError(
                    f"Column '{indicator}' must be 0/1 encoded; found levels {sorted(levels)}"
                )

        if df.index.has_duplicates:
            raise DataLoadError("Dataset contains duplicate model names")


def load_dataset(path: Optional[Union[str, Path]] = None) -> pd.DataFrame:
    """
    Return the canonical 32 x 11 observation table with raw numeric encoding.

    All columns, categorical ones included, are float64. The index holds the
    car model names.
    """
    reader = DatasetReader(path)
    df = reader.read()
    logger.info(
        "Loaded dataset %s (%d rows x %d columns)",
        reader.file_path.name,
        len(df),
        len(df.columns),
    )
    return df
