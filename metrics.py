#!/usr/bin/env python3
# metrics.py

from pyspark.ml.evaluation import BinaryClassificationEvaluator
from pyspark.sql.functions import avg, col, desc, when, sum as spark_sum


def average_score_by(df, group_col, score_col="anomaly_score"):
    return (df
            .groupBy(group_col)
            .agg(avg(score_col).alias(score_col))
            .sort(desc(score_col)))


def area_under_roc(df, label_col="is_anomaly", score_col="anomaly_score"):
    evaluator = BinaryClassificationEvaluator(metricName="areaUnderROC",
                                              labelCol=label_col,
                                              rawPredictionCol=score_col)
    # the evaluator expects a double label
    return evaluator.evaluate(df.withColumn(label_col, col(label_col).cast("double")))


def score_threshold(df, score_col="anomaly_score", quantile=0.995, relative_error=0.001):
    """Score above which the top (1 - quantile) share of rows falls."""
    if not 0.0 <= quantile <= 1.0:
        raise ValueError(f"quantile must be in [0, 1], got {quantile}")
    values = df.approxQuantile(score_col, [quantile], relative_error)
    if not values:
        raise ValueError("Cannot compute a threshold on an empty DataFrame")
    return values[0]


def confusion_counts(df, label_col="is_anomaly", score_col="anomaly_score", threshold=0.5):
    pred = df.withColumn("prediction", when(col(score_col) >= threshold, 1).otherwise(0))

    stats = pred.select(
        spark_sum(when((col("prediction") == 1) & (col(label_col) == 1), 1).otherwise(0)).alias("TP"),
        spark_sum(when((col("prediction") == 1) & (col(label_col) == 0), 1).otherwise(0)).alias("FP"),
        spark_sum(when((col("prediction") == 0) & (col(label_col) == 1), 1).otherwise(0)).alias("FN"),
        spark_sum(when((col("prediction") == 0) & (col(label_col) == 0), 1).otherwise(0)).alias("TN")
    ).collect()[0]

    # sums over an empty frame are null
    return {name: stats[name] or 0 for name in ("TP", "FP", "FN", "TN")}


def classification_metrics(counts):
    TP, FP, FN, TN = counts["TP"], counts["FP"], counts["FN"], counts["TN"]
    total = TP + FP + FN + TN

    precision = TP / float(TP + FP) if TP + FP > 0 else 0.0
    recall    = TP / float(TP + FN) if TP + FN > 0 else 0.0
    f1        = 2 * precision * recall / (precision + recall) if (precision + recall) > 0 else 0.0
    accuracy  = (TP + TN) / float(total) if total > 0 else 0.0

    return {"precision": precision, "recall": recall, "f1": f1, "accuracy": accuracy}
