import argparse
import logging
from pathlib import Path
import time

import numpy as np
import pandas as pd

from distforest import ControlParams, ForestParams, ForestTrainer


def _train_test_split(n, test_size, random_state):
    rng = np.random.default_rng(random_state)
    idx = np.arange(n)
    rng.shuffle(idx)
    n_test = max(1, int(round(n * test_size)))
    return idx[n_test:], idx[:n_test]


def _load_sklearn_dataset(name):
    try:
        if name == "diabetes":
            from sklearn.datasets import load_diabetes

            ds = load_diabetes()
            return ds.data.astype(np.float64), ds.target.astype(np.float64), "anova"

        if name == "breast_cancer":
            from sklearn.datasets import load_breast_cancer

            ds = load_breast_cancer()
            return ds.data.astype(np.float64), ds.target.astype(np.float64), "class"

    except ModuleNotFoundError as e:
        raise ModuleNotFoundError(
            "Dataset requires scikit-learn, which is not installed. "
            "Use the synthetic datasets or install the experiments extra."
        ) from e

    raise ValueError("Unsupported sklearn dataset")


def _encode_feature_column(series: pd.Series) -> tuple[np.ndarray, bool]:
    if pd.api.types.is_bool_dtype(series):
        return series.astype(np.int8).to_numpy(dtype=np.float64), True
    if pd.api.types.is_numeric_dtype(series):
        return pd.to_numeric(series, errors="coerce").to_numpy(dtype=np.float64), False

    # String columns become category codes; missing stays NaN.
    codes, _ = pd.factorize(series, sort=True, use_na_sentinel=True)
    arr = codes.astype(np.float64)
    arr[arr < 0] = np.nan
    return arr, True


def load_table(path: str, target_col: str, exposure_col: str | None = None):
    """Read a CSV policy table into (X, y, exposure, categorical columns).

    Rows with a missing response, exposure or predictor are dropped.
    """
    dataset_path = Path(path)
    if not dataset_path.exists():
        raise FileNotFoundError(f"Dataset not found: {dataset_path}")

    df = pd.read_csv(dataset_path, low_memory=False)
    for col in [target_col] + ([exposure_col] if exposure_col else []):
        if col not in df.columns:
            raise ValueError(
                f"Column '{col}' not found in dataset. Available columns include: {list(df.columns[:10])}"
            )

    y = pd.to_numeric(df[target_col], errors="coerce").to_numpy(dtype=np.float64)
    exposure = None
    if exposure_col:
        exposure = pd.to_numeric(df[exposure_col], errors="coerce").to_numpy(dtype=np.float64)
    X_df = df.drop(columns=[c for c in (target_col, exposure_col) if c])

    encoded = [_encode_feature_column(X_df[col]) for col in X_df.columns]
    if not encoded:
        raise ValueError("No usable feature columns remain after preprocessing.")
    X = np.column_stack([arr for arr, _ in encoded])
    categorical = [j for j, (_, is_cat) in enumerate(encoded) if is_cat]

    keep = np.isfinite(y) & np.all(np.isfinite(X), axis=1)
    if exposure is not None:
        keep &= np.isfinite(exposure)
        exposure = exposure[keep]
    return X[keep], y[keep], exposure, categorical


def load_dataset(name: str, n_samples: int, random_state: int):
    """Synthetic policy-level data: 5 numeric rating factors plus a region code."""
    rng = np.random.default_rng(random_state)
    X = rng.normal(size=(n_samples, 6))
    X[:, 5] = rng.integers(0, 6, size=n_samples)
    region_effect = np.array([0.0, 0.2, -0.3, 0.4, 0.1, -0.2])[X[:, 5].astype(int)]
    eta = 0.5 * X[:, 0] - 0.4 * X[:, 1] + region_effect
    exposure = None

    key = name.lower()
    if key == "class":
        probs = 1.0 / (1.0 + np.exp(-(eta - 1.0)))
        y = (rng.uniform(size=n_samples) < probs).astype(np.float64)
    elif key == "anova":
        y = 3.0 * eta + rng.normal(size=n_samples)
    elif key == "poisson":
        exposure = rng.uniform(0.1, 1.0, size=n_samples)
        y = rng.poisson(exposure * 0.2 * np.exp(eta)).astype(np.float64)
    elif key == "gamma":
        shape = 2.0
        y = rng.gamma(shape, 1000.0 * np.exp(eta) / shape)
    elif key == "lognormal":
        y = np.exp(7.0 + eta + 0.5 * rng.normal(size=n_samples))
    elif key == "exp":
        hazard = 0.1 * np.exp(eta)
        event_time = rng.exponential(1.0 / hazard)
        censor_time = rng.uniform(1.0, 20.0, size=n_samples)
        exposure = np.minimum(event_time, censor_time)
        y = (event_time <= censor_time).astype(np.float64)
    else:
        raise ValueError(
            f"Unknown dataset '{name}'. Choose from: class, anova, poisson, gamma, lognormal, exp"
        )
    return X, y, exposure


def _holdout_metric(method, y_true, y_pred, exposure):
    if method == "class":
        return {"accuracy": float(np.mean(y_pred == y_true))}
    if method in {"poisson", "exp"}:
        mu = np.maximum(y_pred * exposure, 1e-12)
        pos = y_true > 0
        dev = np.zeros_like(y_true)
        dev[pos] = y_true[pos] * np.log(y_true[pos] / mu[pos])
        return {"deviance": float(np.mean(2.0 * (dev - (y_true - mu))))}
    return {"rmse": float(np.sqrt(np.mean((y_true - y_pred) ** 2)))}


def _oob_supported(method, y):
    if method == "exp":
        return False
    if method == "class":
        return np.unique(y[np.isfinite(y)]).size <= 2
    return True


def evaluate_one(
    method,
    n_samples,
    ntrees,
    ncand,
    subsample,
    maxdepth,
    n_jobs,
    random_state,
    data=None,
):
    if data is None:
        X, y, exposure = load_dataset(method, n_samples, random_state)
        categorical = [5]
    else:
        X, y, exposure, categorical = data
    ncand = min(ncand, X.shape[1])
    train_idx, test_idx = _train_test_split(X.shape[0], test_size=0.2, random_state=random_state)

    params = ForestParams(
        method=method,
        ncand=ncand,
        ntrees=ntrees,
        subsample=subsample,
        track_oob=_oob_supported(method, y[train_idx]),
        seed=random_state,
        n_jobs=n_jobs,
        control=ControlParams(minsplit=20, minbucket=7, cp=0.0, maxdepth=maxdepth),
    )
    trainer = ForestTrainer(params)
    t0 = time.perf_counter()
    trainer.fit(
        X[train_idx],
        y[train_idx],
        exposure=None if exposure is None else exposure[train_idx],
        categorical=categorical,
    )
    fit_time = time.perf_counter() - t0

    pred = trainer.predict(X[test_idx])
    test_exposure = np.ones(test_idx.size) if exposure is None else exposure[test_idx]
    return {
        "fit_time_sec": fit_time,
        "metrics": _holdout_metric(method, y[test_idx], pred, test_exposure),
        "oob_error": trainer.forest_.oob_error,
        "importance": trainer.importance(),
        "nodes_split": trainer.metrics["nodes_split"],
    }


def main():
    parser = argparse.ArgumentParser(description="Quick distforest checks on synthetic insurance data")
    parser.add_argument(
        "--methods",
        type=str,
        default="class,anova,poisson,gamma,lognormal,exp",
        help="Comma-separated: class, anova, poisson, gamma, lognormal, exp",
    )
    parser.add_argument("--n-samples", type=int, default=3000)
    parser.add_argument("--ntrees", type=int, default=50)
    parser.add_argument("--ncand", type=int, default=3)
    parser.add_argument("--subsample", type=float, default=0.75)
    parser.add_argument("--maxdepth", type=int, default=6)
    parser.add_argument("--n-jobs", type=int, default=1)
    parser.add_argument("--random-state", type=int, default=42)
    parser.add_argument(
        "--dataset",
        type=str,
        default=None,
        help="diabetes (anova) or breast_cancer (class); overrides --methods",
    )
    parser.add_argument("--data-path", type=str, default=None, help="CSV file to model")
    parser.add_argument("--target-col", type=str, default=None)
    parser.add_argument("--exposure-col", type=str, default=None)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    methods = [m.strip() for m in args.methods.split(",") if m.strip()]
    if not methods:
        raise ValueError("No methods provided")

    data = None
    if args.dataset is not None:
        X, y, method = _load_sklearn_dataset(args.dataset.lower())
        data = (X, y, None, [])
        methods = [method]
    elif args.data_path is not None:
        if args.target_col is None:
            parser.error("--data-path requires --target-col")
        if len(methods) != 1:
            parser.error("--data-path takes exactly one method")
        data = load_table(args.data_path, args.target_col, args.exposure_col)

    for method in methods:
        out = evaluate_one(
            method,
            n_samples=args.n_samples,
            ntrees=args.ntrees,
            ncand=args.ncand,
            subsample=args.subsample,
            maxdepth=args.maxdepth,
            n_jobs=args.n_jobs,
            random_state=args.random_state,
            data=data,
        )
        oob_tail = out["oob_error"][-1] if out["oob_error"].size else float("nan")
        print(
            f"\nmethod={method}"
            f" time={out['fit_time_sec']:.3f}s"
            f" splits={out['nodes_split']}"
            f" metrics={out['metrics']}"
            f" oob_last={oob_tail:.4f}"
        )
        for row in out["importance"][:3]:
            print(f"  {row.predictor:<4} importance={row.importance:.4f} scale_sum={row.scale_sum:.3f}")


if __name__ == "__main__":
    main()
