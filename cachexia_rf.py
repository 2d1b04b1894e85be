#!/usr/bin/env python3
# ==============================================================================
# CACHEXIA-RF
# Random-forest cachexia classification from urinary metabolite concentrations
#
# Normalization strategies, leakage-safe recipes, reproducible splits and
# k-fold cross-validation behind a lazily recomputed analysis session.
# ==============================================================================

VERSION = "1.0.0"  # CACHEXIA-RF version for audit and reproducibility

import argparse
import hashlib
import json
import os
import platform
import re
import sys
import time
import warnings
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import seaborn as sns  # noqa: E402
from scipy import stats  # noqa: E402
from sklearn.compose import ColumnTransformer  # noqa: E402
from sklearn.ensemble import RandomForestClassifier  # noqa: E402
from sklearn.impute import SimpleImputer  # noqa: E402
from sklearn.metrics import (  # noqa: E402
    confusion_matrix,
    roc_auc_score,
    roc_curve,
)
from sklearn.model_selection import KFold, train_test_split  # noqa: E402
from sklearn.pipeline import Pipeline  # noqa: E402
from sklearn.preprocessing import OneHotEncoder, StandardScaler  # noqa: E402

# ---------------------------
# Styling
# ---------------------------

plt.rcParams["figure.dpi"] = 150
plt.rcParams["savefig.dpi"] = 250
plt.rcParams["savefig.bbox"] = "tight"

# ---------------------------
# Defaults
# ---------------------------

RANDOM_STATE = 1337
TRAIN_FRAC = 0.8
CV_FOLDS = 10
N_JOBS = 1  # Single-threaded session model

TREE_COUNT_DEFAULT = 10
TREE_COUNT_MIN = 5
TREE_COUNT_MAX = 100
TREE_COUNT_STEP = 5

DEFAULT_NORMALIZATION = "log2_transform & center"
DATASET_URL = "https://rest.xialab.ca/api/download/metaboanalyst/human_cachexia.csv"

ID_COL = "patient_id"
LABEL_COL = "muscle_loss"
TIME_COL = "time_points"
NEGATIVE_CLASS = "control"
POSITIVE_CLASS = "cachexic"
CLASS_LEVELS = [NEGATIVE_CLASS, POSITIVE_CLASS]
TIME_POINT_LEVELS = ["0_days", "100_days"]

MIN_ROWS_PER_CLASS = 2
PAIRPLOT_TOPK = 4
IMPORTANCE_PLOT_TOPN = 20

# First match wins: visit 1, then visit 2, then the single-visit cohort marker
TIME_POINT_RULES = [
    (r"_V1$", "0_days"),
    (r"_V2$", "100_days"),
    (r"^PIF_", "0_days"),
]

METRIC_NAMES = [
    "accuracy",
    "precision",
    "recall",
    "sensitivity",
    "specificity",
    "f1",
    "npv",
    "roc_auc",
]


# ---------------------------
# Errors
# ---------------------------


class CachexiaPipelineError(Exception):
    """Base class for failures that stop one analysis generation."""


class DataShapeError(CachexiaPipelineError):
    """Dataset lacks the identifier/label columns or a usable label."""


class InsufficientDataError(CachexiaPipelineError):
    """A split or fold holds too few rows of a class to fit or evaluate."""


class TrainingError(CachexiaPipelineError):
    """Random-forest fit failed."""


class DegenerateColumnWarning(UserWarning):
    """Metabolite columns dropped after becoming non-finite under a transform."""


# ---------------------------
# Utilities
# ---------------------------


def now_ts() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S")


def sniff_sep(path: Path) -> str:
    """Auto-detect delimiter for text-based tabular files."""
    try:
        with open(path, "r", errors="ignore") as f:
            head = f.readline()
    except OSError:
        return ","
    if "\t" in head and "," not in head:
        return "\t"
    if ";" in head and "," not in head:
        return ";"
    return ","


def write_csv(path: Path, df: pd.DataFrame, index: bool = False):
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=index)


def write_json(path: Path, obj: Dict[str, Any]):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False, default=str)


def get_versions() -> Dict[str, str]:
    import scipy as _sp
    import sklearn as _sk

    return {
        "cachexia_rf": VERSION,
        "python": sys.version.replace("\n", " "),
        "numpy": np.__version__,
        "pandas": pd.__version__,
        "scipy": _sp.__version__,
        "sklearn": _sk.__version__,
        "matplotlib": matplotlib.__version__,
        "seaborn": sns.__version__,
        "os_system": platform.system(),
        "os_release": platform.release(),
        "machine": platform.machine(),
    }


# ---------------------------
# Session configuration
# ---------------------------


def validate_tree_count(tree_count: Any) -> int:
    """Tree count must be an integer in [5, 100] on a step of 5."""
    if isinstance(tree_count, bool):
        raise ValueError(f"tree_count must be an integer, got {tree_count!r}")
    try:
        n = int(tree_count)
    except (TypeError, ValueError) as e:
        raise ValueError(f"tree_count must be an integer, got {tree_count!r}") from e
    if n != tree_count and not isinstance(tree_count, str):
        raise ValueError(f"tree_count must be an integer, got {tree_count!r}")
    if n < TREE_COUNT_MIN or n > TREE_COUNT_MAX or n % TREE_COUNT_STEP != 0:
        raise ValueError(
            f"tree_count must be between {TREE_COUNT_MIN} and {TREE_COUNT_MAX} "
            f"in steps of {TREE_COUNT_STEP}, got {n}"
        )
    return n


@dataclass
class SessionSettings:
    """
    Resolved inputs for one analysis session.

    Resolution order (later wins): module defaults, environment variables,
    then an explicit ``session_config`` dict.

    Environment variables:
        CACHEXIA_DATA=path_or_url        - Dataset location
        CACHEXIA_NORMALIZATION=<choice>  - One of the NormalizationChoice values
        CACHEXIA_TREES=10                - Forest size (5..100, step 5)
        CACHEXIA_SEED=1337               - Seed for split, forest and folds
        CACHEXIA_CV_FOLDS=10             - Cross-validation folds
        CACHEXIA_LENIENT_CHOICE=1        - Unknown choices fall back to log2 & center
    """

    data_source: str = DATASET_URL
    normalization: str = DEFAULT_NORMALIZATION
    tree_count: int = TREE_COUNT_DEFAULT
    seed: int = RANDOM_STATE
    cv_folds: int = CV_FOLDS
    lenient_choice: bool = False

    ENV_VARS = {
        "data_source": "CACHEXIA_DATA",
        "normalization": "CACHEXIA_NORMALIZATION",
        "tree_count": "CACHEXIA_TREES",
        "seed": "CACHEXIA_SEED",
        "cv_folds": "CACHEXIA_CV_FOLDS",
        "lenient_choice": "CACHEXIA_LENIENT_CHOICE",
    }

    @classmethod
    def resolve(cls, session_config: Optional[Dict[str, Any]] = None) -> "SessionSettings":
        values: Dict[str, Any] = {}
        for field, env_var in cls.ENV_VARS.items():
            raw = os.environ.get(env_var)
            if raw is None or raw == "":
                continue
            if field in ("tree_count", "seed", "cv_folds"):
                values[field] = int(raw)
            elif field == "lenient_choice":
                values[field] = raw == "1"
            else:
                values[field] = raw
        if session_config:
            values.update({k: v for k, v in session_config.items() if k in cls.ENV_VARS})
        settings = cls(**values)
        settings.validate()
        return settings

    def validate(self):
        self.tree_count = validate_tree_count(self.tree_count)
        if int(self.cv_folds) < 2:
            raise ValueError(f"cv_folds must be at least 2, got {self.cv_folds}")
        self.choice()

    def choice(self) -> "NormalizationChoice":
        return NormalizationChoice.parse(self.normalization, lenient=self.lenient_choice)


# ---------------------------
# Audit log (JSONL)
# ---------------------------


def compute_run_key(
    table: pd.DataFrame, choice: "NormalizationChoice", tree_count: int, seed: int
) -> str:
    """Fingerprint of (dataset content, choice, tree count, seed)."""
    row_hashes = pd.util.hash_pandas_object(table, index=True).values
    data_digest = hashlib.sha256(row_hashes.tobytes()).hexdigest()
    payload = f"{data_digest}|{choice.value}|{int(tree_count)}|{int(seed)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


class AuditLog:
    """
    Append-only audit trail of pipeline events.

    Entries are always kept in memory (``entries``); when ``jsonl_path`` is
    given each entry is also appended to that file as one JSON object per
    line. Every entry carries the run key that was active when it was
    written, linking outputs to the exact inputs that produced them.
    """

    def __init__(self, jsonl_path: Optional[Path] = None, run_key: str = "unset"):
        self.jsonl_path = Path(jsonl_path) if jsonl_path is not None else None
        if self.jsonl_path is not None:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
        self.run_key = run_key
        self.session_start = now_ts()
        self.log_count = 0
        self.entries: List[Dict[str, Any]] = []
        self._write_entry(
            "SESSION_INIT",
            {"session_start": self.session_start, "versions": get_versions()},
        )

    def _write_entry(self, event: str, details: Optional[Dict[str, Any]] = None):
        self.log_count += 1
        entry = {
            "ts": now_ts(),
            "event": event,
            "details": details or {},
            "run_key": self.run_key,
            "log_sequence": self.log_count,
        }
        self.entries.append(entry)
        if self.jsonl_path is not None:
            with open(self.jsonl_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        return entry

    def log(self, event: str, details: Optional[Dict[str, Any]] = None):
        return self._write_entry(event, details)

    def set_run_key(self, run_key: str):
        self.run_key = run_key
        return self._write_entry("RUN_KEY", {"run_key": run_key})

    def events(self) -> List[str]:
        return [e["event"] for e in self.entries]


def _audit(audit: Optional[AuditLog], event: str, details: Optional[Dict[str, Any]] = None):
    if audit is not None:
        audit.log(event, details)


# ---------------------------
# Dataset loading
# ---------------------------


def read_table(source: Union[str, Path], audit: Optional[AuditLog] = None) -> pd.DataFrame:
    """
    Read the raw sample table from a CSV/TSV file, an Excel workbook or an
    http(s) URL.
    """
    text = str(source)
    if re.match(r"^https?://", text):
        _audit(audit, "READING_URL", {"source": text})
        return pd.read_csv(text)

    path = Path(source).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")
    suffix = path.suffix.lower()
    if suffix in {".xlsx", ".xls"}:
        _audit(audit, "READING_EXCEL", {"file": str(path)})
        return pd.read_excel(path, engine="openpyxl")

    sep = sniff_sep(path)
    _audit(audit, "READING_TEXT", {"file": str(path), "sep": sep})
    return pd.read_csv(path, sep=sep)


def derive_time_points(ids: pd.Series) -> pd.Series:
    """
    Map sample identifiers to a visit factor.

    Rules in TIME_POINT_RULES are applied in order and the first matching
    rule wins, so an identifier carrying both a visit suffix and the
    single-visit prefix takes the visit suffix.
    """
    ids = ids.astype(str)
    out = pd.Series([None] * len(ids), index=ids.index, dtype=object)
    for pattern, level in TIME_POINT_RULES:
        hit = out.isna() & ids.str.contains(pattern, regex=True)
        out[hit] = level
    return pd.Series(
        pd.Categorical(out, categories=TIME_POINT_LEVELS), index=ids.index, name=TIME_COL
    )


def load_working_table(raw: pd.DataFrame, audit: Optional[AuditLog] = None) -> pd.DataFrame:
    """
    Build the canonical working table from the raw sample table.

    Column 0 is the sample identifier and column 1 the label; every numeric
    column after them is treated as a metabolite concentration.

    Raises:
        DataShapeError: missing identifier/label columns, unknown label
            values, fewer than two classes or no numeric metabolites.
    """
    if raw.shape[1] < 3:
        raise DataShapeError(
            f"cannot build model: expected identifier, label and metabolite columns, "
            f"got {raw.shape[1]} columns"
        )
    cols = list(raw.columns)
    df = raw.rename(columns={cols[0]: ID_COL, cols[1]: LABEL_COL})
    df[ID_COL] = df[ID_COL].astype(str)

    labels = df[LABEL_COL].astype(str).str.strip().str.lower()
    unknown = sorted(set(labels) - set(CLASS_LEVELS))
    if unknown:
        raise DataShapeError(f"cannot build model: unknown label values {unknown}")
    df[LABEL_COL] = pd.Categorical(labels, categories=CLASS_LEVELS)
    if df[LABEL_COL].nunique() < 2:
        raise DataShapeError("cannot build model: label column has fewer than 2 classes")

    candidates = cols[2:]
    numeric = [c for c in candidates if pd.api.types.is_numeric_dtype(df[c])]
    dropped = [c for c in candidates if c not in numeric]
    if not numeric:
        raise DataShapeError("cannot build model: no numeric metabolite columns")
    if dropped:
        _audit(audit, "NON_NUMERIC_COLUMNS_DROPPED", {"cols": dropped})

    df = df[[ID_COL, LABEL_COL] + numeric].copy()
    df.insert(2, TIME_COL, derive_time_points(df[ID_COL]))
    df = df.reset_index(drop=True)

    _audit(
        audit,
        "WORKING_TABLE_BUILT",
        {
            "rows": int(len(df)),
            "metabolites": int(len(numeric)),
            "class_counts": {k: int(v) for k, v in df[LABEL_COL].value_counts().items()},
        },
    )
    return df


def load_dataset(
    source: Union[str, Path] = DATASET_URL, audit: Optional[AuditLog] = None
) -> pd.DataFrame:
    return load_working_table(read_table(source, audit), audit)


def metabolite_columns(table: pd.DataFrame) -> List[str]:
    """Numeric feature columns; never the identifier, label or time point."""
    reserved = {ID_COL, LABEL_COL, TIME_COL}
    return [
        c
        for c in table.columns
        if c not in reserved and pd.api.types.is_numeric_dtype(table[c])
    ]


def summarize_working_table(table: pd.DataFrame) -> Dict[str, Any]:
    time_counts = table[TIME_COL].value_counts(dropna=False) if TIME_COL in table else {}
    return {
        "rows": int(len(table)),
        "cols": int(table.shape[1]),
        "metabolites": int(len(metabolite_columns(table))),
        "class_counts": {str(k): int(v) for k, v in table[LABEL_COL].value_counts().items()},
        "time_point_counts": {
            ("missing" if pd.isna(k) else str(k)): int(v) for k, v in dict(time_counts).items()
        },
        "missing_cells": int(table.isnull().sum().sum()),
    }


# ---------------------------
# Normalization
# ---------------------------


class NormalizationChoice(str, Enum):
    NORMALIZE_CENTER = "normalize & center"
    LOG2_PARETO = "log2_transform & pareto_scale"
    NORMALIZE_PARETO = "normalize & pareto_scale"
    LOG2_CENTER = "log2_transform & center"

    @classmethod
    def parse(cls, value: Any, lenient: bool = False) -> "NormalizationChoice":
        """
        Accept a member, its display string or its name (case-insensitive).

        Unrecognized input raises ValueError unless ``lenient`` is set, in
        which case it falls back to LOG2_CENTER.
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if text == member.value or text.upper() == member.name:
                return member
        if lenient:
            return cls.LOG2_CENTER
        valid = [m.value for m in cls]
        raise ValueError(f"Unknown normalization choice {value!r}; expected one of {valid}")


class NormalizationStrategy(NamedTuple):
    log2: bool
    pareto: bool
    recipe_steps: Tuple[str, ...]


# Recipe steps hold exactly what the table-level transform leaves undone
NORMALIZATION_STRATEGIES: Dict[NormalizationChoice, NormalizationStrategy] = {
    NormalizationChoice.NORMALIZE_CENTER: NormalizationStrategy(
        log2=False, pareto=False, recipe_steps=("normalize", "center", "scale")
    ),
    NormalizationChoice.LOG2_PARETO: NormalizationStrategy(
        log2=True, pareto=True, recipe_steps=()
    ),
    NormalizationChoice.NORMALIZE_PARETO: NormalizationStrategy(
        log2=False, pareto=True, recipe_steps=("normalize",)
    ),
    NormalizationChoice.LOG2_CENTER: NormalizationStrategy(
        log2=True, pareto=False, recipe_steps=("center", "scale")
    ),
}


def log2_transform(frame: pd.DataFrame) -> pd.DataFrame:
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.log2(frame.astype(float))


def pareto_scale(frame: pd.DataFrame) -> pd.DataFrame:
    """Mean-center each column and divide by the square root of its sample SD."""
    frame = frame.astype(float)
    with np.errstate(divide="ignore", invalid="ignore"):
        return (frame - frame.mean()) / np.sqrt(frame.std(ddof=1))


def drop_degenerate_columns(frame: pd.DataFrame) -> Tuple[pd.DataFrame, List[str]]:
    finite = np.isfinite(frame.to_numpy(dtype=float)).all(axis=0)
    dropped = [c for c, ok in zip(frame.columns, finite) if not ok]
    return frame.loc[:, list(finite)], dropped


def normalize(
    table: pd.DataFrame,
    choice: Union[NormalizationChoice, str],
    audit: Optional[AuditLog] = None,
) -> pd.DataFrame:
    """
    Apply the table-level part of a normalization strategy.

    Metabolite columns are transformed; identifier, label and time-point
    columns pass through untouched. After a log2 or pareto transform, any
    column holding a non-finite value is dropped and reported through a
    DegenerateColumnWarning. The input table is never modified.

    Args:
        table: Working table
        choice: NormalizationChoice member or its string form

    Returns:
        New table with the same rows and index
    """
    choice = NormalizationChoice.parse(choice)
    strategy = NORMALIZATION_STRATEGIES[choice]
    numeric_cols = metabolite_columns(table)
    carried = [c for c in table.columns if c not in numeric_cols]

    values = table[numeric_cols].astype(float)
    if strategy.log2:
        values = log2_transform(values)
    if strategy.pareto:
        values = pareto_scale(values)

    dropped: List[str] = []
    if strategy.log2 or strategy.pareto:
        values, dropped = drop_degenerate_columns(values)
    if dropped:
        warnings.warn(
            f"{len(dropped)} metabolite column(s) became non-finite under "
            f"'{choice.value}' and were dropped: {dropped}",
            DegenerateColumnWarning,
            stacklevel=2,
        )
        _audit(audit, "DEGENERATE_COLUMNS_DROPPED", {"choice": choice.value, "cols": dropped})

    out = pd.concat([table[carried], values], axis=1)
    _audit(
        audit,
        "NORMALIZED",
        {
            "choice": choice.value,
            "log2": strategy.log2,
            "pareto": strategy.pareto,
            "n_features_in": len(numeric_cols),
            "n_features_out": int(values.shape[1]),
        },
    )
    return out


# ---------------------------
# Train/test split
# ---------------------------


@dataclass(frozen=True, eq=False)
class Split:
    train: pd.DataFrame
    test: pd.DataFrame
    seed: int

    @property
    def train_keys(self) -> frozenset:
        return frozenset(self.train.index)

    @property
    def test_keys(self) -> frozenset:
        return frozenset(self.test.index)

    def sizes(self) -> Dict[str, int]:
        return {"train": int(len(self.train)), "test": int(len(self.test))}


def split_train_test(
    table: pd.DataFrame,
    seed: int = RANDOM_STATE,
    train_frac: float = TRAIN_FRAC,
    audit: Optional[AuditLog] = None,
) -> Split:
    """
    Unstratified random train/test partition of the normalized table.

    The identifier column is dropped first. The same seed on the same row
    order always yields the same partition.
    """
    data = table.drop(columns=[ID_COL], errors="ignore")
    counts = data[LABEL_COL].value_counts()
    thin = {str(k): int(v) for k, v in counts.items() if v < MIN_ROWS_PER_CLASS}
    if thin:
        raise InsufficientDataError(
            f"need at least {MIN_ROWS_PER_CLASS} rows per class to split, got {thin}"
        )

    n = len(data)
    n_train = int(round(n * train_frac))
    n_test = n - n_train
    if n_train < 1 or n_test < 1:
        raise InsufficientDataError(f"cannot split {n} rows at train fraction {train_frac}")

    train, test = train_test_split(
        data, train_size=n_train, test_size=n_test, random_state=seed, shuffle=True
    )
    split = Split(train=train, test=test, seed=int(seed))
    _audit(audit, "SPLIT_DONE", {**split.sizes(), "seed": int(seed)})
    return split


# ---------------------------
# Recipe (leakage-safe preprocessing)
# ---------------------------

RECIPE_STEP_FACTORIES = {
    "normalize": lambda: StandardScaler(),
    "center": lambda: StandardScaler(with_std=False),
    "scale": lambda: StandardScaler(with_mean=False),
}


def recipe_steps(choice: Union[NormalizationChoice, str]) -> Tuple[str, ...]:
    return NORMALIZATION_STRATEGIES[NormalizationChoice.parse(choice)].recipe_steps


def make_preprocessor(
    choice: Union[NormalizationChoice, str],
    numeric_cols: Sequence[str],
    categorical_cols: Sequence[str],
) -> ColumnTransformer:
    """Unfitted column transformer for a normalization choice."""
    steps = recipe_steps(choice)
    if steps:
        numeric_transformer = Pipeline(
            steps=[(name, RECIPE_STEP_FACTORIES[name]()) for name in steps]
        )
    else:
        numeric_transformer = "passthrough"

    transformers = [("num", numeric_transformer, list(numeric_cols))]
    if categorical_cols:
        categorical_transformer = Pipeline(
            steps=[
                ("imputer", SimpleImputer(strategy="constant", fill_value="missing")),
                ("onehot", OneHotEncoder(handle_unknown="ignore")),
            ]
        )
        transformers.append(("cat", categorical_transformer, list(categorical_cols)))

    return ColumnTransformer(
        transformers=transformers,
        remainder="drop",
        sparse_threshold=0.0,
        verbose_feature_names_out=False,
    )


def _predictor_frame(
    table: pd.DataFrame, numeric_cols: Sequence[str], categorical_cols: Sequence[str]
) -> pd.DataFrame:
    X = table[list(numeric_cols)].astype(float)
    for c in categorical_cols:
        X[c] = table[c].astype(object)
    return X


@dataclass(frozen=True, eq=False)
class Recipe:
    """Preprocessing fitted on a training partition; applied unchanged elsewhere."""

    choice: NormalizationChoice
    steps: Tuple[str, ...]
    preprocessor: ColumnTransformer
    numeric_columns: Tuple[str, ...]
    categorical_columns: Tuple[str, ...]
    n_train: int

    @property
    def feature_names(self) -> List[str]:
        return [str(c) for c in self.preprocessor.get_feature_names_out()]

    def bake(self, table: pd.DataFrame) -> pd.DataFrame:
        X = _predictor_frame(table, self.numeric_columns, self.categorical_columns)
        baked = self.preprocessor.transform(X)
        return pd.DataFrame(
            np.asarray(baked, dtype=float), index=table.index, columns=self.feature_names
        )

    def describe(self) -> pd.DataFrame:
        """Fitted statistics per step and variable (centers and scales)."""
        rows = []
        numeric = self.preprocessor.named_transformers_["num"]
        if isinstance(numeric, Pipeline):
            for name, scaler in numeric.steps:
                for i, col in enumerate(self.numeric_columns):
                    rows.append(
                        {
                            "step": name,
                            "variable": col,
                            "center": float(scaler.mean_[i]) if scaler.with_mean else None,
                            "scale": float(scaler.scale_[i]) if scaler.with_std else None,
                        }
                    )
        return pd.DataFrame(rows, columns=["step", "variable", "center", "scale"])


def build_recipe(
    train_table: pd.DataFrame,
    choice: Union[NormalizationChoice, str],
    audit: Optional[AuditLog] = None,
) -> Recipe:
    """
    Fit the recipe for ``choice`` on the training partition only.

    The returned recipe's ``bake`` reuses those fitted statistics on any
    other partition; it never refits.
    """
    choice = NormalizationChoice.parse(choice)
    if len(train_table) == 0:
        raise InsufficientDataError("cannot fit a recipe on an empty training partition")
    numeric_cols = tuple(metabolite_columns(train_table))
    categorical_cols = (TIME_COL,) if TIME_COL in train_table.columns else ()

    preprocessor = make_preprocessor(choice, numeric_cols, categorical_cols)
    preprocessor.fit(_predictor_frame(train_table, numeric_cols, categorical_cols))

    recipe = Recipe(
        choice=choice,
        steps=recipe_steps(choice),
        preprocessor=preprocessor,
        numeric_columns=numeric_cols,
        categorical_columns=categorical_cols,
        n_train=int(len(train_table)),
    )
    _audit(
        audit,
        "RECIPE_FITTED",
        {
            "choice": choice.value,
            "steps": list(recipe.steps),
            "n_numeric": len(numeric_cols),
            "n_categorical": len(categorical_cols),
            "n_train": recipe.n_train,
        },
    )
    return recipe


# ---------------------------
# Random forest
# ---------------------------


@dataclass(frozen=True, eq=False)
class TrainedModel:
    forest: RandomForestClassifier
    recipe: Recipe
    tree_count: int
    seed: int
    feature_names: Tuple[str, ...]

    def positive_index(self) -> int:
        return list(self.forest.classes_).index(POSITIVE_CLASS)

    def feature_importance(self, metabolites_only: bool = True) -> pd.DataFrame:
        """
        Features ranked by mean impurity decrease (descending).

        One-hot time-point columns are summed back into a single
        ``time_points`` entry when ``metabolites_only`` is False.
        """
        imp = pd.Series(self.forest.feature_importances_, index=list(self.feature_names))
        metabolites = list(self.recipe.numeric_columns)
        if metabolites_only:
            imp = imp.loc[metabolites]
        else:
            source = [c if c in metabolites else TIME_COL for c in imp.index]
            imp = imp.groupby(source, sort=False).sum()
        ranked = (
            imp.rename("importance")
            .rename_axis("variable")
            .reset_index()
            .sort_values(["importance", "variable"], ascending=[False, True], kind="mergesort")
            .reset_index(drop=True)
        )
        ranked.insert(0, "rank", np.arange(1, len(ranked) + 1))
        return ranked

    def describe(self) -> Dict[str, Any]:
        rf = self.forest
        return {
            "n_estimators": int(rf.n_estimators),
            "criterion": rf.criterion,
            "max_features": rf.max_features,
            "min_samples_leaf": rf.min_samples_leaf,
            "random_state": rf.random_state,
            "mode": "classification",
            "importance": "impurity",
            "n_features": len(self.feature_names),
            "classes": [str(c) for c in rf.classes_],
        }


def train_model(
    recipe: Recipe,
    train_table: pd.DataFrame,
    tree_count: int = TREE_COUNT_DEFAULT,
    seed: int = RANDOM_STATE,
    audit: Optional[AuditLog] = None,
) -> TrainedModel:
    """
    Fit a random-forest classifier on the recipe-baked training partition.

    Raises:
        ValueError: tree_count outside 5..100 step 5
        TrainingError: fewer than two label classes, or the fit itself failed
    """
    tree_count = validate_tree_count(tree_count)
    y = train_table[LABEL_COL].astype(object)
    present = sorted(set(y.dropna()))
    if len(present) < 2:
        raise TrainingError(
            f"training partition holds {len(present)} label class(es) {present}; need 2"
        )

    X = recipe.bake(train_table)
    forest = RandomForestClassifier(
        n_estimators=tree_count,
        criterion="gini",
        random_state=seed,
        n_jobs=N_JOBS,
    )
    try:
        forest.fit(X, np.asarray(y, dtype=str))
    except ValueError as e:
        raise TrainingError(f"random forest fit failed: {e}") from e

    model = TrainedModel(
        forest=forest,
        recipe=recipe,
        tree_count=tree_count,
        seed=int(seed),
        feature_names=tuple(X.columns),
    )
    _audit(audit, "MODEL_TRAINED", {**model.describe(), "n_train": int(len(X))})
    return model


# ---------------------------
# Evaluation
# ---------------------------


def _safe_ratio(num: float, den: float) -> float:
    return float(num) / float(den) if den else 0.0


def binary_metrics(tp: int, fp: int, fn: int, tn: int) -> Dict[str, float]:
    """Confusion-matrix metrics for the cachexic class; 0/0 resolves to 0."""
    precision = _safe_ratio(tp, tp + fp)
    recall = _safe_ratio(tp, tp + fn)
    f1 = _safe_ratio(2 * precision * recall, precision + recall)
    return {
        "accuracy": _safe_ratio(tp + tn, tp + fp + fn + tn),
        "precision": precision,
        "recall": recall,
        "sensitivity": recall,
        "specificity": _safe_ratio(tn, tn + fp),
        "f1": f1,
        "npv": _safe_ratio(tn, tn + fn),
    }


@dataclass(frozen=True, eq=False)
class EvaluationResult:
    predictions: pd.DataFrame
    confusion: pd.DataFrame
    metrics: Dict[str, float]
    roc: pd.DataFrame
    roc_auc: float

    def counts(self) -> Dict[str, int]:
        cm = self.confusion
        return {
            "TP": int(cm.loc[POSITIVE_CLASS, POSITIVE_CLASS]),
            "FP": int(cm.loc[NEGATIVE_CLASS, POSITIVE_CLASS]),
            "FN": int(cm.loc[POSITIVE_CLASS, NEGATIVE_CLASS]),
            "TN": int(cm.loc[NEGATIVE_CLASS, NEGATIVE_CLASS]),
        }

    def metrics_table(self) -> pd.DataFrame:
        return pd.DataFrame(
            [{"metric": k, "estimate": v} for k, v in self.metrics.items()]
        )


def evaluate_model(
    model: TrainedModel,
    recipe: Recipe,
    test_table: pd.DataFrame,
    audit: Optional[AuditLog] = None,
) -> EvaluationResult:
    """
    Score the held-out partition with the training-fitted recipe.

    The confusion matrix has true classes as rows and predicted classes as
    columns, both ordered (control, cachexic). A partition holding a single
    class yields an empty ROC curve and a NaN AUC.
    """
    if len(test_table) == 0:
        raise InsufficientDataError("cannot evaluate on an empty partition")

    X = recipe.bake(test_table)
    proba = model.forest.predict_proba(X)
    pos = model.positive_index()
    p_pos = proba[:, pos]
    predicted = np.asarray(model.forest.predict(X), dtype=str)
    truth = np.asarray(test_table[LABEL_COL].astype(object), dtype=str)

    predictions = pd.DataFrame(
        {
            "truth": truth,
            "predicted": predicted,
            f"prob_{POSITIVE_CLASS}": p_pos,
            f"prob_{NEGATIVE_CLASS}": 1.0 - p_pos,
        },
        index=test_table.index,
    )

    cm = confusion_matrix(truth, predicted, labels=CLASS_LEVELS)
    confusion = pd.DataFrame(
        cm,
        index=pd.Index(CLASS_LEVELS, name="truth"),
        columns=pd.Index(CLASS_LEVELS, name="predicted"),
    )
    tp = cm[1, 1]
    fp = cm[0, 1]
    fn = cm[1, 0]
    tn = cm[0, 0]
    metrics = binary_metrics(tp, fp, fn, tn)

    y_bin = (truth == POSITIVE_CLASS).astype(int)
    if len(np.unique(y_bin)) == 2:
        fpr, tpr, thr = roc_curve(y_bin, p_pos)
        roc = pd.DataFrame({"fpr": fpr, "tpr": tpr, "threshold": thr})
        auc = float(roc_auc_score(y_bin, p_pos))
    else:
        roc = pd.DataFrame(columns=["fpr", "tpr", "threshold"])
        auc = float("nan")
    metrics["roc_auc"] = auc

    result = EvaluationResult(
        predictions=predictions, confusion=confusion, metrics=metrics, roc=roc, roc_auc=auc
    )
    _audit(audit, "EVALUATION_DONE", {"n_test": int(len(test_table)), **result.counts(), **metrics})
    return result


# ---------------------------
# Cross-validation
# ---------------------------


@dataclass(frozen=True, eq=False)
class CrossValidationResult:
    folds: pd.DataFrame
    summary: pd.DataFrame
    k: int
    seed: int

    @property
    def per_metric(self) -> Dict[str, Tuple[float, float]]:
        return {
            row.metric: (float(row.mean), float(row.std_err))
            for row in self.summary.itertuples(index=False)
        }


def aggregate_fold_metrics(folds: pd.DataFrame) -> pd.DataFrame:
    """
    Mean and standard error (sample SD / sqrt(n)) of each metric over folds.

    NaN fold values are left out of that metric's n.
    """
    rows = []
    for metric in METRIC_NAMES:
        if metric not in folds.columns:
            continue
        vals = folds[metric].to_numpy(dtype=float)
        vals = vals[~np.isnan(vals)]
        n = int(len(vals))
        rows.append(
            {
                "metric": metric,
                "mean": float(np.mean(vals)) if n else float("nan"),
                "std_err": float(stats.sem(vals, ddof=1)) if n > 1 else float("nan"),
                "n": n,
            }
        )
    return pd.DataFrame(rows, columns=["metric", "mean", "std_err", "n"])


def cross_validate_pipeline(
    train_table: pd.DataFrame,
    choice: Union[NormalizationChoice, str],
    tree_count: int = TREE_COUNT_DEFAULT,
    k: int = CV_FOLDS,
    seed: int = RANDOM_STATE,
    audit: Optional[AuditLog] = None,
) -> CrossValidationResult:
    """
    k-fold cross-validation of recipe + forest on the training partition.

    Each fold refits its own recipe on the other k-1 folds, so no fold's
    statistics reach its own assessment rows. This is the slowest node of
    a session (tens of seconds on the full dataset at 100 trees).

    Raises:
        InsufficientDataError: fewer rows than folds, or a fold's analysis
            set lacks a class
    """
    choice = NormalizationChoice.parse(choice)
    tree_count = validate_tree_count(tree_count)
    n = len(train_table)
    if k < 2 or n < k:
        raise InsufficientDataError(f"cannot run {k}-fold cross-validation on {n} rows")

    kf = KFold(n_splits=k, shuffle=True, random_state=seed)
    rows = []
    for fold_idx, (fit_idx, hold_idx) in enumerate(kf.split(train_table), start=1):
        analysis = train_table.iloc[fit_idx]
        assessment = train_table.iloc[hold_idx]
        recipe = build_recipe(analysis, choice)
        try:
            model = train_model(recipe, analysis, tree_count, seed)
        except TrainingError as e:
            raise InsufficientDataError(f"fold {fold_idx}/{k}: {e}") from e
        result = evaluate_model(model, recipe, assessment)
        row = {"fold": fold_idx, "n_assessment": int(len(assessment)), **result.metrics}
        rows.append(row)
        _audit(audit, f"CV_FOLD_{fold_idx}", row)

    folds = pd.DataFrame(rows)
    summary = aggregate_fold_metrics(folds)
    out = CrossValidationResult(folds=folds, summary=summary, k=int(k), seed=int(seed))
    _audit(audit, "CV_DONE", {"k": int(k), "per_metric": out.per_metric})
    return out


# ---------------------------
# Analysis session (lazy dependency graph)
# ---------------------------


@dataclass(frozen=True, eq=False)
class AnalysisResult:
    choice: NormalizationChoice
    tree_count: int
    seed: int
    run_key: str
    normalized: pd.DataFrame
    split: Split
    recipe: Recipe
    model: TrainedModel
    evaluation: EvaluationResult
    importance: pd.DataFrame
    cross_validation: Optional[CrossValidationResult]

    def summary(self) -> Dict[str, Any]:
        out = {
            "run_key": self.run_key,
            "normalization": self.choice.value,
            "tree_count": self.tree_count,
            "seed": self.seed,
            "split": self.split.sizes(),
            "recipe_steps": list(self.recipe.steps),
            "n_features": len(self.model.feature_names),
            "confusion": self.evaluation.counts(),
            "metrics": dict(self.evaluation.metrics),
            "top_features": self.importance["variable"].head(5).tolist(),
        }
        if self.cross_validation is not None:
            out["cross_validation"] = {
                m: {"mean": mean, "std_err": se}
                for m, (mean, se) in self.cross_validation.per_metric.items()
            }
        return out


class AnalysisSession:
    """
    Explicit dependency graph of pure pipeline steps over one working table.

    normalized -> split -> recipe -> model -> {evaluation, importance}
                  split -> cross_validation

    Nodes are computed lazily and memoized for the current generation.
    Changing an input (normalization choice or tree count) starts a new
    generation and discards every cached node; values are never mutated in
    place. A node that fails records its error and is reported as a failed
    render, while nodes that do not depend on it stay usable. There is no
    cancellation: a cross-validation recompute runs to completion.
    """

    NODES = (
        "normalized",
        "split",
        "recipe",
        "model",
        "evaluation",
        "importance",
        "cross_validation",
    )

    def __init__(
        self,
        table: pd.DataFrame,
        choice: Union[NormalizationChoice, str] = NormalizationChoice.LOG2_CENTER,
        tree_count: int = TREE_COUNT_DEFAULT,
        seed: int = RANDOM_STATE,
        cv_folds: int = CV_FOLDS,
        audit: Optional[AuditLog] = None,
        lenient_choice: bool = False,
    ):
        self.table = table
        self.seed = int(seed)
        self.cv_folds = int(cv_folds)
        self.audit = audit
        self.lenient_choice = lenient_choice
        self.choice = NormalizationChoice.parse(choice, lenient=lenient_choice)
        self.tree_count = validate_tree_count(tree_count)
        self.generation = 0
        self.compute_counts: Counter = Counter()
        self._cache: Dict[str, Any] = {}
        self._failures: Dict[str, CachexiaPipelineError] = {}
        self._start_generation()

    def _start_generation(self):
        self.generation += 1
        self._cache.clear()
        self._failures.clear()
        self.run_key = compute_run_key(self.table, self.choice, self.tree_count, self.seed)
        if self.audit is not None:
            self.audit.set_run_key(self.run_key)
        _audit(
            self.audit,
            "GENERATION_START",
            {
                "generation": self.generation,
                "choice": self.choice.value,
                "tree_count": self.tree_count,
                "seed": self.seed,
            },
        )

    def update(
        self,
        choice: Optional[Union[NormalizationChoice, str]] = None,
        tree_count: Optional[int] = None,
    ) -> bool:
        """Apply new inputs; returns True when they changed (new generation)."""
        new_choice = (
            self.choice
            if choice is None
            else NormalizationChoice.parse(choice, lenient=self.lenient_choice)
        )
        new_trees = self.tree_count if tree_count is None else validate_tree_count(tree_count)
        if new_choice == self.choice and new_trees == self.tree_count:
            return False
        self.choice = new_choice
        self.tree_count = new_trees
        self._start_generation()
        return True

    def get(self, node: str) -> Any:
        if node not in self.NODES:
            raise KeyError(f"Unknown node {node!r}; expected one of {self.NODES}")
        if node in self._cache:
            return self._cache[node]
        if node in self._failures:
            raise self._failures[node]
        try:
            value = self._compute(node)
        except CachexiaPipelineError as e:
            self._failures[node] = e
            _audit(
                self.audit,
                "NODE_FAILED",
                {"node": node, "error_type": type(e).__name__, "error": str(e)},
            )
            raise
        self._cache[node] = value
        self.compute_counts[node] += 1
        return value

    def _compute(self, node: str) -> Any:
        if node == "normalized":
            return normalize(self.table, self.choice, self.audit)
        if node == "split":
            return split_train_test(self.get("normalized"), seed=self.seed, audit=self.audit)
        if node == "recipe":
            return build_recipe(self.get("split").train, self.choice, self.audit)
        if node == "model":
            return train_model(
                self.get("recipe"),
                self.get("split").train,
                tree_count=self.tree_count,
                seed=self.seed,
                audit=self.audit,
            )
        if node == "evaluation":
            return evaluate_model(
                self.get("model"), self.get("recipe"), self.get("split").test, self.audit
            )
        if node == "importance":
            return self.get("model").feature_importance()
        return cross_validate_pipeline(
            self.get("split").train,
            self.choice,
            tree_count=self.tree_count,
            k=self.cv_folds,
            seed=self.seed,
            audit=self.audit,
        )

    def render(self, node: str) -> Dict[str, Any]:
        try:
            value = self.get(node)
        except CachexiaPipelineError as e:
            return {
                "status": "failed",
                "node": node,
                "generation": self.generation,
                "error_type": type(e).__name__,
                "error": str(e),
            }
        return {"status": "success", "node": node, "generation": self.generation, "value": value}

    def data_view(self) -> Dict[str, Any]:
        """Working-table profile; independent of every model node."""
        return summarize_working_table(self.table)

    def snapshot(self, with_cv: bool = True) -> AnalysisResult:
        return AnalysisResult(
            choice=self.choice,
            tree_count=self.tree_count,
            seed=self.seed,
            run_key=self.run_key,
            normalized=self.get("normalized"),
            split=self.get("split"),
            recipe=self.get("recipe"),
            model=self.get("model"),
            evaluation=self.get("evaluation"),
            importance=self.get("importance"),
            cross_validation=self.get("cross_validation") if with_cv else None,
        )


def run_analysis(
    table: pd.DataFrame,
    choice: Union[NormalizationChoice, str] = NormalizationChoice.LOG2_CENTER,
    tree_count: int = TREE_COUNT_DEFAULT,
    seed: int = RANDOM_STATE,
    cv_folds: int = CV_FOLDS,
    with_cv: bool = True,
    audit: Optional[AuditLog] = None,
) -> AnalysisResult:
    """One request, one result bundle: a pure function of its arguments."""
    session = AnalysisSession(
        table, choice=choice, tree_count=tree_count, seed=seed, cv_folds=cv_folds, audit=audit
    )
    return session.snapshot(with_cv=with_cv)


# ---------------------------
# Synthetic data
# ---------------------------


class SyntheticDataGenerator:
    """
    Generate metabolomics-shaped datasets for tests and demos.
    """

    @staticmethod
    def generate_cachexia_like(
        n_samples: int = 77,
        n_metabolites: int = 63,
        n_informative: int = 10,
        cachexic_ratio: float = 0.61,
        n_constant: int = 0,
        random_state: int = RANDOM_STATE,
    ) -> pd.DataFrame:
        """
        Raw table in the layout of the public cachexia CSV.

        Args:
            n_samples: Number of urine samples
            n_metabolites: Positive concentration columns
            n_informative: Metabolites shifted upward in cachexic samples
            cachexic_ratio: Proportion of cachexic samples
            n_constant: Extra metabolites with one constant value (zero variance)
            random_state: Random seed

        Returns:
            DataFrame with 'Patient ID', 'Muscle loss' and metabolite columns
        """
        rng = np.random.RandomState(random_state)
        n_pos = int(round(n_samples * cachexic_ratio))
        y = np.array([1] * n_pos + [0] * (n_samples - n_pos))
        rng.shuffle(y)

        ids = []
        for i in range(n_samples):
            kind = i % 4
            if kind == 0:
                ids.append(f"PIF_{100 + i:03d}")
            elif kind == 1:
                ids.append(f"NETL_{i:03d}_V1")
            elif kind == 2:
                ids.append(f"NETL_{i - 1:03d}_V2")
            else:
                ids.append(f"NETCR_{i:03d}")

        data: Dict[str, Any] = {
            "Patient ID": ids,
            "Muscle loss": np.where(y == 1, POSITIVE_CLASS, NEGATIVE_CLASS),
        }
        for j in range(n_metabolites):
            base = rng.normal(3.0, 1.0)
            log_conc = rng.normal(base, 0.8, n_samples)
            if j < n_informative:
                log_conc = log_conc + y * rng.uniform(0.6, 1.5)
            data[f"metabolite_{j + 1:02d}"] = np.round(np.exp(log_conc), 3)
        for j in range(n_constant):
            data[f"constant_{j + 1:02d}"] = np.full(n_samples, 1.0)
        return pd.DataFrame(data)


# ---------------------------
# Plots and exports
# ---------------------------


def save_confusion_matrix(evaluation: EvaluationResult, outpath: Path):
    """Save confusion matrix heatmap"""
    fig, ax = plt.subplots(figsize=(6, 5))
    sns.heatmap(
        evaluation.confusion,
        annot=True,
        fmt="d",
        cmap="Blues",
        ax=ax,
        xticklabels=[f"Predicted {c}" for c in CLASS_LEVELS],
        yticklabels=[f"Actual {c}" for c in CLASS_LEVELS],
    )
    ax.set_title("Confusion Matrix (test partition)")
    ax.set_ylabel("Truth")
    ax.set_xlabel("Prediction")

    outpath.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(outpath, dpi=250, bbox_inches="tight")
    plt.close(fig)


def save_roc_curve(evaluation: EvaluationResult, outpath: Path):
    """Save ROC curve"""
    fig, ax = plt.subplots(figsize=(6, 6))
    if len(evaluation.roc):
        ax.plot(
            evaluation.roc["fpr"],
            evaluation.roc["tpr"],
            color="darkorange",
            lw=2,
            label=f"ROC (AUC = {evaluation.roc_auc:.3f})",
        )
    ax.plot([0, 1], [0, 1], color="navy", lw=2, linestyle="--", label="Random")
    ax.set_xlim([0.0, 1.0])
    ax.set_ylim([0.0, 1.05])
    ax.set_xlabel("1 - Specificity")
    ax.set_ylabel("Sensitivity")
    ax.set_title(f"ROC Curve ({POSITIVE_CLASS})")
    ax.legend(loc="lower right")
    ax.grid(alpha=0.3)

    outpath.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(outpath, dpi=250, bbox_inches="tight")
    plt.close(fig)


def save_importance_plot(importance: pd.DataFrame, outpath: Path, top_n: int = IMPORTANCE_PLOT_TOPN):
    top = importance.head(top_n)
    fig, ax = plt.subplots(figsize=(7, max(3, 0.3 * len(top) + 1)))
    sns.barplot(data=top, x="importance", y="variable", color="steelblue", ax=ax)
    ax.set_title("Variable Importance (impurity)")
    ax.set_xlabel("Mean decrease in impurity")
    ax.set_ylabel("")

    outpath.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(outpath, dpi=250, bbox_inches="tight")
    plt.close(fig)


def save_pairplot(
    normalized: pd.DataFrame,
    importance: pd.DataFrame,
    outpath: Path,
    top_k: int = PAIRPLOT_TOPK,
):
    """Pairwise scatter of the highest-ranked metabolites, colored by label."""
    cols = [c for c in importance["variable"].head(top_k) if c in normalized.columns]
    if len(cols) < 2:
        return
    frame = normalized[cols + [LABEL_COL]].copy()
    frame[LABEL_COL] = frame[LABEL_COL].astype(str)
    grid = sns.pairplot(frame, hue=LABEL_COL, corner=True, plot_kws={"s": 18})
    outpath.parent.mkdir(parents=True, exist_ok=True)
    grid.savefig(outpath, dpi=200)
    plt.close(grid.figure)


def export_results(
    result: AnalysisResult,
    out_dir: Path,
    plots: bool = False,
    audit: Optional[AuditLog] = None,
) -> Dict[str, str]:
    """
    Write tables (CSV) and a run manifest (JSON) for one analysis result.

    Returns:
        Mapping of artifact name to written path
    """
    out_dir = Path(out_dir)
    tables_dir = out_dir / "tables"
    written: Dict[str, Path] = {}

    written["metrics"] = tables_dir / "Test_Metrics.csv"
    write_csv(written["metrics"], result.evaluation.metrics_table())
    written["confusion"] = tables_dir / "Confusion_Matrix.csv"
    write_csv(written["confusion"], result.evaluation.confusion, index=True)
    written["roc"] = tables_dir / "ROC_Curve.csv"
    write_csv(written["roc"], result.evaluation.roc)
    written["importance"] = tables_dir / "Variable_Importance.csv"
    write_csv(written["importance"], result.importance)
    written["recipe"] = tables_dir / "Recipe_Statistics.csv"
    write_csv(written["recipe"], result.recipe.describe())
    if result.cross_validation is not None:
        written["cv_summary"] = tables_dir / "CV_Summary.csv"
        write_csv(written["cv_summary"], result.cross_validation.summary)
        written["cv_folds"] = tables_dir / "CV_Folds.csv"
        write_csv(written["cv_folds"], result.cross_validation.folds)

    if plots:
        charts_dir = out_dir / "charts"
        written["confusion_plot"] = charts_dir / "Confusion_Matrix.png"
        save_confusion_matrix(result.evaluation, written["confusion_plot"])
        written["roc_plot"] = charts_dir / "ROC_Curve.png"
        save_roc_curve(result.evaluation, written["roc_plot"])
        written["importance_plot"] = charts_dir / "Variable_Importance.png"
        save_importance_plot(result.importance, written["importance_plot"])
        written["pairplot"] = charts_dir / "Top_Metabolites_Pairplot.png"
        save_pairplot(result.normalized, result.importance, written["pairplot"])

    written["manifest"] = out_dir / "run_manifest.json"
    write_json(
        written["manifest"],
        {
            "generated": now_ts(),
            "versions": get_versions(),
            "summary": result.summary(),
            "model": result.model.describe(),
        },
    )
    _audit(audit, "RESULTS_EXPORTED", {"out_dir": str(out_dir), "files": len(written)})
    return {k: str(v) for k, v in written.items() if v.exists()}


# ---------------------------
# CLI
# ---------------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="cachexia-rf",
        description="Random-forest cachexia classification over urinary metabolites.",
    )
    p.add_argument("--data", default=None, help="CSV/TSV/XLSX path or URL (default: public dataset)")
    p.add_argument(
        "--normalization",
        default=None,
        choices=[c.value for c in NormalizationChoice],
        help="Normalization strategy",
    )
    p.add_argument("--trees", type=int, default=None, help="Forest size (5..100, step 5)")
    p.add_argument("--seed", type=int, default=None)
    p.add_argument("--folds", type=int, default=None, help="Cross-validation folds")
    p.add_argument("--output", default=None, help="Directory for tables, charts and audit log")
    p.add_argument("--no-cv", action="store_true", help="Skip cross-validation")
    p.add_argument("--plots", action="store_true", help="Write PNG charts (needs --output)")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    overrides = {
        "data_source": args.data,
        "normalization": args.normalization,
        "tree_count": args.trees,
        "seed": args.seed,
        "cv_folds": args.folds,
    }
    settings = SessionSettings.resolve({k: v for k, v in overrides.items() if v is not None})
    sns.set_theme(style="white", context="paper", font_scale=1.15)

    out_dir = Path(args.output).expanduser().resolve() if args.output else None
    audit = AuditLog(out_dir / "audit_log.jsonl" if out_dir else None)

    print("=" * 70 + f"\nCACHEXIA-RF {VERSION}\n" + "=" * 70)
    print(f"Dataset:        {settings.data_source}")
    print(f"Normalization:  {settings.choice().value}")
    print(f"Trees:          {settings.tree_count}   Seed: {settings.seed}")

    try:
        table = load_dataset(settings.data_source, audit)
    except (DataShapeError, OSError, ValueError) as e:
        print(f"ERROR: cannot load {settings.data_source}: {e}")
        _audit(audit, "DATASET_LOAD_FAILED", {"error_type": type(e).__name__, "error": str(e)})
        return 2

    session = AnalysisSession(
        table,
        choice=settings.choice(),
        tree_count=settings.tree_count,
        seed=settings.seed,
        cv_folds=settings.cv_folds,
        audit=audit,
        lenient_choice=settings.lenient_choice,
    )
    profile = session.data_view()
    print(f"Rows: {profile['rows']}  Metabolites: {profile['metabolites']}  "
          f"Classes: {profile['class_counts']}")

    failed = False
    for node in ("evaluation", "importance") + (() if args.no_cv else ("cross_validation",)):
        rendered = session.render(node)
        if rendered["status"] != "success":
            failed = True
            print(f"[{node}] cannot render: {rendered['error_type']}: {rendered['error']}")

    if failed:
        return 1

    result = session.snapshot(with_cv=not args.no_cv)
    print("-" * 70)
    print(f"Split: {result.split.sizes()}   Recipe steps: {list(result.recipe.steps) or 'none'}")
    print(result.evaluation.confusion.to_string())
    print(result.evaluation.metrics_table().to_string(index=False))
    if result.cross_validation is not None:
        print("-" * 70 + f"\n{result.cross_validation.k}-fold cross-validation")
        print(result.cross_validation.summary.to_string(index=False))
    print("-" * 70 + "\nTop features")
    print(result.importance.head(10).to_string(index=False))

    if out_dir is not None:
        written = export_results(result, out_dir, plots=args.plots, audit=audit)
        print("=" * 70 + f"\nResults folder: {out_dir} ({len(written)} files)\n" + "=" * 70)
    return 0


if __name__ == "__main__":
    sys.exit(main())
