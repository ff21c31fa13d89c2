#!/usr/bin/env python3
# pca_anomaly.py

"""PCA based anomaly scoring as a Spark ML estimator.

1. Filter out anomalous rows and fit PCA on what is left.
2. Reconstruct every feature vector from its top-k principal components.
3. Score each row by the sum of squared differences between the original and
   the reconstructed vector, min-max normalized over the whole dataset.

`PCAAnomaly` is the estimator, `PCAAnomalyModel` the fitted transformer. Both
can be used as pipeline stages and saved/loaded with the pipeline.
"""

import logging
import os

import numpy as np
from pyspark import keyword_only
from pyspark.ml import Estimator, Model
from pyspark.ml.feature import PCA, PCAModel
from pyspark.ml.linalg import VectorUDT
from pyspark.ml.param import Param, Params, TypeConverters
from pyspark.ml.param.shared import HasInputCol, HasLabelCol, HasOutputCol
from pyspark.ml.util import (
    DefaultParamsReadable,
    DefaultParamsReader,
    DefaultParamsWritable,
    DefaultParamsWriter,
    MLReadable,
    MLReader,
    MLWritable,
    MLWriter,
)
from pyspark.sql import functions as F
from pyspark.sql.functions import col, udf
from pyspark.sql.types import DoubleType, StructField, StructType

logger = logging.getLogger(__name__)


def _to_positive_int(value):
    value = TypeConverters.toInt(value)
    if value <= 0:
        raise ValueError(f"k must be > 0, got {value}")
    return value


def reconstruction_error(original, projected, pc):
    """Sum of squared differences between `original` and `pc @ projected`."""
    if original is None or projected is None:
        return None
    reconstructed = np.asarray(pc).dot(np.asarray(projected, dtype=float))
    diff = np.asarray(original, dtype=float) - reconstructed
    return float(np.sum(diff ** 2))


def min_max_normalize(value, min_value, max_value):
    """Scales `value` (a number or a Column) into [0, 1]; 0.0 when the range is empty."""
    if value is None or min_value is None or max_value is None:
        return None
    if max_value == min_value:
        # keeps null scores null when value is a Column
        return value * 0.0
    return (value - min_value) / (max_value - min_value)


class _PCAAnomalyParams(HasInputCol, HasOutputCol, HasLabelCol):
    """
    Params for :py:class:`PCAAnomaly` and :py:class:`PCAAnomalyModel`.
    """

    k = Param(Params._dummy(), "k", "the number of principal components (> 0)",
              typeConverter=_to_positive_int)
    outputPCACol = Param(Params._dummy(), "outputPCACol",
                         "The output column with PCA features",
                         typeConverter=TypeConverters.toString)
    outputAbsScoreCol = Param(Params._dummy(), "outputAbsScoreCol",
                              "The output column with non-normalized Anomaly Scores",
                              typeConverter=TypeConverters.toString)

    def __init__(self, *args):
        super().__init__(*args)
        self._setDefault(outputPCACol="pca_features",
                         outputAbsScoreCol="nonnorm_anomaly_score",
                         labelCol="label")

    def getK(self):
        return self.getOrDefault(self.k)

    def getOutputPCACol(self):
        return self.getOrDefault(self.outputPCACol)

    def getOutputAbsScoreCol(self):
        return self.getOrDefault(self.outputAbsScoreCol)

    def setInputCol(self, value):
        return self._set(inputCol=value)

    def setOutputCol(self, value):
        return self._set(outputCol=value)

    def setLabelCol(self, value):
        return self._set(labelCol=value)

    def setOutputPCACol(self, value):
        return self._set(outputPCACol=value)

    def setOutputAbsScoreCol(self, value):
        return self._set(outputAbsScoreCol=value)

    def setK(self, value):
        return self._set(k=value)

    def transformSchema(self, schema):
        """Validates `schema` and returns it with the three output columns appended."""
        if not self.isDefined(self.inputCol):
            raise ValueError("inputCol must be set")
        input_col = self.getInputCol()
        if input_col not in schema.fieldNames():
            raise ValueError(f"Input column {input_col} does not exist.")
        if not isinstance(schema[input_col].dataType, VectorUDT):
            raise ValueError(f"Input column {input_col} must be a vector column, "
                             f"got {schema[input_col].dataType.simpleString()}.")

        outputs = [self.getOutputPCACol(), self.getOutputAbsScoreCol(), self.getOutputCol()]
        if len(set(outputs)) != len(outputs):
            raise ValueError(f"Output columns must be distinct, got {outputs}.")
        for name in outputs:
            if name in schema.fieldNames():
                raise ValueError(f"Output column {name} already exists.")

        return StructType(schema.fields + [
            StructField(self.getOutputPCACol(), VectorUDT(), False),
            StructField(self.getOutputAbsScoreCol(), DoubleType(), True),
            StructField(self.getOutputCol(), DoubleType(), True),
        ])


class PCAAnomaly(Estimator, _PCAAnomalyParams, DefaultParamsReadable, DefaultParamsWritable):
    """
    Trains a model that projects vectors onto the top `k` principal components
    of the normal (label == 0) rows and scores rows by reconstruction error.

    Usage::

        pca_anom = PCAAnomaly(k=2, inputCol="norm_features", outputCol="anomaly_score",
                              labelCol="is_anomaly")
        model = pca_anom.fit(training)
        model.transform(test).select("anomaly_score")
    """

    @keyword_only
    def __init__(self, *, k=None, inputCol=None, outputCol=None, labelCol="label",
                 outputPCACol="pca_features", outputAbsScoreCol="nonnorm_anomaly_score"):
        super().__init__()
        kwargs = self._input_kwargs
        self.setParams(**kwargs)

    @keyword_only
    def setParams(self, *, k=None, inputCol=None, outputCol=None, labelCol="label",
                  outputPCACol="pca_features", outputAbsScoreCol="nonnorm_anomaly_score"):
        kwargs = self._input_kwargs
        return self._set(**kwargs)

    def _fit(self, dataset):
        self.transformSchema(dataset.schema)
        if not self.isDefined(self.k):
            raise ValueError("k must be set")
        label_col = self.getLabelCol()
        if label_col not in dataset.columns:
            raise ValueError(f"Label column {label_col} does not exist.")

        # remove anomalies
        clean_dataset = dataset.filter(col(label_col) == 0)
        if not clean_dataset.head(1):
            raise ValueError(f"No normal rows ({label_col} == 0) to fit PCA on.")

        pca_model = PCA(k=self.getK(),
                        inputCol=self.getInputCol(),
                        outputCol=self.getOutputPCACol()).fit(clean_dataset)
        logger.info("Fitted PCA with k=%d on %d features", self.getK(),
                    pca_model.pc.numRows)

        model = PCAAnomalyModel(pcaModel=pca_model)
        model._resetUid(self.uid)
        return self._copyValues(model)


class PCAAnomalyModel(Model, _PCAAnomalyParams, MLReadable, MLWritable):
    """
    Model fitted by :py:class:`PCAAnomaly`.

    Vectors to be transformed must be the same length as the vectors given to
    :py:meth:`PCAAnomaly.fit`.
    """

    def __init__(self, pcaModel=None):
        super().__init__()
        self.pcaModel = pcaModel

    def _transform(self, dataset):
        """
        The min/max aggregation runs eagerly and evaluates the scoring UDF once;
        the returned frame evaluates it again when used. Cache the result when
        it is read more than once.
        """
        self.transformSchema(dataset.schema)
        input_col = self.getInputCol()
        pca_col = self.getOutputPCACol()
        abs_score_col = self.getOutputAbsScoreCol()
        output_col = self.getOutputCol()

        pca_results = self.pcaModel.transform(dataset, {
            self.pcaModel.inputCol: input_col,
            self.pcaModel.outputCol: pca_col,
        })

        pc = self.pcaModel.pc.toArray()

        def anomaly_score(original, projected):
            if original is None or projected is None:
                return None
            return reconstruction_error(original.toArray(), projected.toArray(), pc)

        anomaly_score_udf = udf(anomaly_score, DoubleType())
        scored = pca_results.withColumn(abs_score_col,
                                        anomaly_score_udf(col(input_col), col(pca_col)))

        # Normalize
        stats = scored.agg(F.min(abs_score_col).alias("min"),
                           F.max(abs_score_col).alias("max")).head()
        min_val, max_val = stats["min"], stats["max"]
        logger.debug("Raw anomaly score range: [%s, %s]", min_val, max_val)

        normalized = min_max_normalize(col(abs_score_col), min_val, max_val)
        if normalized is None:
            normalized = F.lit(None).cast(DoubleType())
        return scored.withColumn(output_col, normalized)

    def copy(self, extra=None):
        if extra is None:
            extra = dict()
        that = PCAAnomalyModel(pcaModel=self.pcaModel)
        that._resetUid(self.uid)
        return self._copyValues(that, extra)

    def write(self):
        return PCAAnomalyModelWriter(self)

    @classmethod
    def read(cls):
        return PCAAnomalyModelReader(cls)


class PCAAnomalyModelWriter(MLWriter):
    """Saves params metadata at `path` and the wrapped PCA model under `path/pca`."""

    def __init__(self, instance):
        super().__init__()
        self.instance = instance

    def saveImpl(self, path):
        DefaultParamsWriter.saveMetadata(self.instance, path, self.sc)
        pca_path = os.path.join(path, "pca")
        self.instance.pcaModel.save(pca_path)
        logger.info("Saved %s to %s", self.instance.uid, path)


class PCAAnomalyModelReader(MLReader):

    def __init__(self, cls):
        super().__init__()
        self.cls = cls

    def load(self, path):
        """
        Loads a :py:class:`PCAAnomalyModel` from data located at `path`.
        """
        metadata = DefaultParamsReader.loadMetadata(path, self.sc)
        pca_path = os.path.join(path, "pca")
        pca_model = PCAModel.load(pca_path)
        model = self.cls(pcaModel=pca_model)
        model._resetUid(metadata["uid"])
        DefaultParamsReader.getAndSetParams(model, metadata)
        return model
