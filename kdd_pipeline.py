#!/usr/bin/env python3
# kdd_pipeline.py

import logging

from pyspark.ml import Pipeline, PipelineModel
from pyspark.ml.feature import OneHotEncoder, StandardScaler, StringIndexer, VectorAssembler
from pyspark.sql.functions import col, when

from pca_anomaly import PCAAnomaly

logger = logging.getLogger(__name__)

KDD_COLUMNS = [
    "duration", "protocol_type", "service", "flag", "src_bytes", "dst_bytes",
    "land", "wrong_fragment", "urgent", "hot", "num_failed_logins", "logged_in",
    "num_compromised", "root_shell", "su_attempted", "num_root",
    "num_file_creations", "num_shells", "num_access_files", "num_outbound_cmds",
    "is_host_login", "is_guest_login", "count", "srv_count", "serror_rate",
    "srv_serror_rate", "rerror_rate", "srv_rerror_rate", "same_srv_rate",
    "diff_srv_rate", "srv_diff_host_rate", "dst_host_count",
    "dst_host_srv_count", "dst_host_same_srv_rate", "dst_host_diff_srv_rate",
    "dst_host_same_src_port_rate", "dst_host_srv_diff_host_rate",
    "dst_host_serror_rate", "dst_host_srv_serror_rate", "dst_host_rerror_rate",
    "dst_host_srv_rerror_rate", "label",
]

CATEGORICAL_FEATURES = ("protocol_type", "service", "flag")
NORMAL_LABEL = "normal."
NON_FEATURE_COLUMNS = ("id", "label", "is_anomaly")


def load_kdd(spark, path=None, table=None):
    """Reads KDD Cup 99 rows from a catalog table or a header-less CSV file."""
    if (path is None) == (table is None):
        raise ValueError("Exactly one of path or table must be given")

    if table is not None:
        # need to refresh to invalidate cache
        spark.catalog.refreshTable(table)
        logger.info("Reading table %s", table)
        return spark.read.table(table)

    logger.info("Reading KDD csv %s", path)
    df = (spark.read
          .option("header", False)
          .option("inferSchema", True)
          .csv(path))
    if len(df.columns) != len(KDD_COLUMNS):
        raise ValueError(f"Expected {len(KDD_COLUMNS)} columns in {path}, "
                         f"found {len(df.columns)}")
    return df.toDF(*KDD_COLUMNS)


def clean_kdd(df, label_col="label", anomaly_col="is_anomaly"):
    return (df
            .withColumn(anomaly_col, when(col(label_col) == NORMAL_LABEL, 0).otherwise(1))
            .na.drop())


def feature_columns(df, categorical=CATEGORICAL_FEATURES, exclude=NON_FEATURE_COLUMNS):
    """Splits the feature columns of `df` into (continuous, categorical) lists."""
    features = set(df.columns) - set(exclude)
    categorical = set(categorical) & features
    continuous = features - categorical
    return sorted(continuous), sorted(categorical)


def build_pipeline(continuous, categorical, k=2,
                   features_col="features",
                   norm_features_col="norm_features",
                   pca_features_col="pca_features",
                   score_col="anomaly_score",
                   anomaly_col="is_anomaly"):
    # Indexers
    indexers = [StringIndexer(inputCol=c, outputCol=c + "_index", handleInvalid="keep")
                for c in categorical]

    stages = list(indexers)
    encoded = [c + "_encoded" for c in categorical]
    if categorical:
        stages.append(OneHotEncoder(inputCols=[c + "_index" for c in categorical],
                                    outputCols=encoded))

    assembler = VectorAssembler(inputCols=list(continuous) + encoded,
                                outputCol=features_col)

    scaler = StandardScaler(inputCol=features_col,
                            outputCol=norm_features_col,
                            withMean=True, withStd=True)

    pca_anom = PCAAnomaly(k=k,
                          inputCol=norm_features_col,
                          outputPCACol=pca_features_col,
                          outputCol=score_col,
                          labelCol=anomaly_col)

    stages += [assembler, scaler, pca_anom]
    return Pipeline(stages=stages)


def split(df, train_ratio=0.8, seed=123):
    if not 0.0 < train_ratio < 1.0:
        raise ValueError(f"train_ratio must be in (0, 1), got {train_ratio}")
    training, test = df.randomSplit([train_ratio, 1.0 - train_ratio], seed=seed)
    return training, test


def fit_and_save(pipeline, training, model_dir):
    model = pipeline.fit(training)
    model.write().overwrite().save(model_dir)
    logger.info("Saved pipeline model to %s", model_dir)
    return model


def load_model(model_dir):
    logger.info("Loading pipeline model from %s", model_dir)
    return PipelineModel.load(model_dir)
