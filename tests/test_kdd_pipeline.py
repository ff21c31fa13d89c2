import pytest
from pyspark.ml.feature import OneHotEncoder, StandardScaler, StringIndexer, VectorAssembler

import kdd_pipeline
from pca_anomaly import PCAAnomaly, PCAAnomalyModel

ROWS = [
    (0, 181, "tcp", "http", "SF", "normal."),
    (0, 239, "tcp", "http", "SF", "normal."),
    (1, 235, "tcp", "http", "SF", "normal."),
    (0, 219, "udp", "domain_u", "SF", "normal."),
    (2, 217, "tcp", "http", "SF", "normal."),
    (0, 212, "udp", "domain_u", "SF", "normal."),
    (1, 159, "tcp", "http", "SF", "normal."),
    (0, 210, "tcp", "http", "SF", "normal."),
    (0, 1032, "icmp", "ecr_i", "SF", "smurf."),
    (0, 1032, "icmp", "ecr_i", "SF", "smurf."),
    (0, 0, "tcp", "private", "S0", "neptune."),
]


@pytest.fixture
def kdd_df(spark):
    return spark.createDataFrame(
        ROWS, ["duration", "src_bytes", "protocol_type", "service", "flag", "label"])


def test_kdd_columns():
    assert len(kdd_pipeline.KDD_COLUMNS) == 42
    assert kdd_pipeline.KDD_COLUMNS[-1] == "label"
    assert set(kdd_pipeline.CATEGORICAL_FEATURES) <= set(kdd_pipeline.KDD_COLUMNS)


def test_clean_kdd_marks_anomalies(kdd_df):
    cleaned = kdd_pipeline.clean_kdd(kdd_df)
    rows = cleaned.select("label", "is_anomaly").collect()
    assert {r["label"]: r["is_anomaly"] for r in rows} == {
        "normal.": 0, "smurf.": 1, "neptune.": 1}


def test_clean_kdd_drops_nulls(spark):
    df = spark.createDataFrame([(0, "tcp", "normal."), (None, "udp", "normal."),
                                (3, None, "smurf.")],
                               "duration int, protocol_type string, label string")
    assert kdd_pipeline.clean_kdd(df).count() == 1


def test_feature_columns(spark):
    df = spark.createDataFrame([(1, 0, "tcp", "http", 5, "normal.", 0)],
                               ["id", "duration", "protocol_type", "service", "src_bytes",
                                "label", "is_anomaly"])
    continuous, categorical = kdd_pipeline.feature_columns(df)
    assert continuous == ["duration", "src_bytes"]
    # flag is missing from the frame
    assert categorical == ["protocol_type", "service"]


@pytest.mark.parametrize("kwargs", [{}, {"path": "kdd.csv", "table": "kdd"}])
def test_load_kdd_needs_one_source(spark, kwargs):
    with pytest.raises(ValueError, match="Exactly one"):
        kdd_pipeline.load_kdd(spark, **kwargs)


def kdd_line(protocol, service, flag, label):
    values = ["0"] * 41
    values[1:4] = [protocol, service, flag]
    return ",".join(values + [label])


def test_load_kdd_csv(spark, tmp_path):
    path = tmp_path / "kddcup.csv"
    path.write_text("\n".join([kdd_line("tcp", "http", "SF", "normal."),
                               kdd_line("icmp", "ecr_i", "SF", "smurf.")]) + "\n")
    df = kdd_pipeline.load_kdd(spark, path=str(path))
    assert df.columns == kdd_pipeline.KDD_COLUMNS
    assert sorted(r["label"] for r in df.collect()) == ["normal.", "smurf."]


def test_load_kdd_csv_wrong_width(spark, tmp_path):
    path = tmp_path / "other.csv"
    path.write_text("1,2,3\n")
    with pytest.raises(ValueError, match="Expected 42 columns"):
        kdd_pipeline.load_kdd(spark, path=str(path))


def test_build_pipeline_stages():
    pipeline = kdd_pipeline.build_pipeline(["duration", "src_bytes"], ["flag", "protocol_type"], k=3)
    stages = pipeline.getStages()
    assert [type(s) for s in stages] == [StringIndexer, StringIndexer, OneHotEncoder,
                                         VectorAssembler, StandardScaler, PCAAnomaly]
    assert stages[0].getHandleInvalid() == "keep"
    assert stages[3].getInputCols() == ["duration", "src_bytes",
                                        "flag_encoded", "protocol_type_encoded"]
    pca_anom = stages[-1]
    assert pca_anom.getK() == 3
    assert pca_anom.getInputCol() == "norm_features"
    assert pca_anom.getOutputCol() == "anomaly_score"
    assert pca_anom.getLabelCol() == "is_anomaly"


def test_build_pipeline_without_categorical():
    stages = kdd_pipeline.build_pipeline(["duration"], [], k=1).getStages()
    assert [type(s) for s in stages] == [VectorAssembler, StandardScaler, PCAAnomaly]


def test_split_rejects_bad_ratio(kdd_df):
    with pytest.raises(ValueError):
        kdd_pipeline.split(kdd_df, train_ratio=1.0)


def test_split(kdd_df):
    training, test = kdd_pipeline.split(kdd_df, train_ratio=0.5, seed=7)
    assert training.count() + test.count() == len(ROWS)


def test_fit_save_load_and_score(kdd_df, tmp_path):
    cleaned = kdd_pipeline.clean_kdd(kdd_df)
    continuous, categorical = kdd_pipeline.feature_columns(cleaned)
    pipeline = kdd_pipeline.build_pipeline(continuous, categorical, k=2)

    model_dir = str(tmp_path / "PCAAnomalyModel")
    kdd_pipeline.fit_and_save(pipeline, cleaned, model_dir)
    model = kdd_pipeline.load_model(model_dir)
    assert isinstance(model.stages[-1], PCAAnomalyModel)

    scored = model.transform(cleaned).select("is_anomaly", "anomaly_score").collect()
    scores = [r["anomaly_score"] for r in scored]
    assert min(scores) == pytest.approx(0.0)
    assert max(scores) == pytest.approx(1.0)
    assert all(0.0 <= s <= 1.0 for s in scores)


def test_load_kdd_table(spark, kdd_df):
    kdd_df.write.mode("overwrite").saveAsTable("kdd_table")
    try:
        df = kdd_pipeline.load_kdd(spark, table="kdd_table")
        assert set(df.columns) == set(kdd_df.columns)
        assert df.count() == len(ROWS)
    finally:
        spark.sql("DROP TABLE IF EXISTS kdd_table")
