#!/usr/bin/env python3
# pca_reconstruction_error.py

"""Train, save, reload and evaluate the PCA anomaly pipeline on KDD Cup 99.

Usage:
    python pca_reconstruction_error.py --input kddcup.data_10_percent.gz
    python pca_reconstruction_error.py --table kdd --model-dir /mnt/models/PCAAnomalyModel
"""

import argparse
import logging

from pyspark.sql import SparkSession

import kdd_pipeline
import metrics

MODEL_DIR = "models/PCAAnomalyModel"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="PCA reconstruction error anomaly detection")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--input", help="header-less KDD Cup 99 csv (may be gzipped)")
    source.add_argument("--table", help="catalog table with KDD Cup 99 rows")
    parser.add_argument("--model-dir", default=MODEL_DIR)
    parser.add_argument("--k", type=int, default=2, help="number of principal components")
    parser.add_argument("--seed", type=int, default=123)
    parser.add_argument("--train-ratio", type=float, default=0.8)
    parser.add_argument("--quantile", type=float, default=0.995,
                        help="score quantile used as anomaly threshold")
    parser.add_argument("--master", default="local[*]")
    parser.add_argument("--app-name", default="PCA_AnomalyDetection")
    args = parser.parse_args(argv)
    if args.k <= 0:
        parser.error("--k must be > 0")
    if not 0.0 < args.train_ratio < 1.0:
        parser.error("--train-ratio must be in (0, 1)")
    return args


def report(name, scored):
    print(f"=== {name}: mean anomaly score ===")
    metrics.average_score_by(scored, "is_anomaly").show()
    metrics.average_score_by(scored, "label").show(truncate=False)


def run(spark, args):
    # 1) Load and clean data
    df = kdd_pipeline.load_kdd(spark, path=args.input, table=args.table)
    clean_df = kdd_pipeline.clean_kdd(df)
    continuous, categorical = kdd_pipeline.feature_columns(clean_df)

    # 2) Split
    training, test = kdd_pipeline.split(clean_df, args.train_ratio, args.seed)

    # 3) Build, fit and save pipeline
    pipeline = kdd_pipeline.build_pipeline(continuous, categorical, k=args.k)
    main_pipeline_model = kdd_pipeline.fit_and_save(pipeline, training, args.model_dir)

    # 4) Score training data with the reloaded model, test data with the fitted one
    model = kdd_pipeline.load_model(args.model_dir)
    transformed_training = (model.transform(training)
                            .select("is_anomaly", "label", "anomaly_score")
                            .cache())
    transformed_test = (main_pipeline_model.transform(test)
                        .select("is_anomaly", "label", "anomaly_score")
                        .cache())

    report("Training", transformed_training)
    report("Test", transformed_test)

    # 5) Evaluate
    print(f"Area under ROC (training): {metrics.area_under_roc(transformed_training):.4f}")
    print(f"Area under ROC (test):     {metrics.area_under_roc(transformed_test):.4f}")

    thresh = metrics.score_threshold(transformed_training, quantile=args.quantile)
    counts = metrics.confusion_counts(transformed_test, threshold=thresh)
    result = metrics.classification_metrics(counts)

    print(f"\n=== Test metrics (threshold at {args.quantile:.3%} training quantile) ===")
    print(f"Threshold:        {thresh:.4f}")
    print(f"True Positives:   {counts['TP']}")
    print(f"False Positives:  {counts['FP']}")
    print(f"False Negatives:  {counts['FN']}")
    print(f"True Negatives:   {counts['TN']}")
    print(f"Precision:        {result['precision']:.4f}")
    print(f"Recall:           {result['recall']:.4f}")
    print(f"F1-Score:         {result['f1']:.4f}")
    print(f"Accuracy overall: {result['accuracy']:.4f}")


def main(argv=None):
    logging.basicConfig(level=logging.INFO)
    # Reduce Spark logging
    logging.getLogger("py4j").setLevel(logging.WARNING)

    args = parse_args(argv)

    spark = (SparkSession.builder
             .appName(args.app_name)
             .master(args.master)
             .getOrCreate())
    spark.sparkContext.setLogLevel("WARN")

    try:
        run(spark, args)
    finally:
        spark.stop()


if __name__ == "__main__":
    main()
