"""Deterministic hashed bag-of-words embedding."""

from __future__ import annotations

import hashlib
import math
import re
from typing import Any

from ...core.component import ComponentManifest, ConfigSpec, Function, InputSpec
from ...core.context import RowContext
from ...core.registry import register_component
from ...core.types import FLOAT32, DataType, ScalarKind, ScalarType, SimilarityMetric, VectorType

_TOKEN = re.compile(r"\w+", re.UNICODE)


@register_component("function/hash_embedding")
class HashEmbeddingFunction(Function):
    """
    Embed text by hashing its tokens into a fixed number of buckets.

    No model involved: the same text always maps to the same unit vector,
    which is enough to exercise vector fields and indexes. Outputs are
    memoized per distinct input.
    """

    cache = True
    behavior_version = 1

    @classmethod
    def describe(cls) -> ComponentManifest:
        return ComponentManifest(
            type="function/hash_embedding",
            description="Hashed bag-of-words text embedding",
            category="function",
            config={
                "dimension": ConfigSpec(
                    type="integer",
                    default=64,
                    description="Vector dimension"
                ),
                "metric": ConfigSpec(
                    type="string",
                    default=SimilarityMetric.COSINE_SIMILARITY.value,
                    choices=[m.value for m in SimilarityMetric],
                    description="Similarity metric of the output vector"
                ),
            },
            inputs=[InputSpec(name="text", type="Str", description="Text to embed")],
        )

    def analyze(self, *input_types: DataType) -> DataType:
        if len(input_types) != 1:
            raise TypeError(f"hash_embedding takes 1 input, got {len(input_types)}")
        t = input_types[0]
        if not isinstance(t, ScalarType) or t.kind != ScalarKind.STR:
            raise TypeError(f"hash_embedding input must be Str, got {t}")
        return VectorType(
            FLOAT32,
            self.get_config("dimension"),
            SimilarityMetric(self.get_config("metric")),
        )

    async def execute(self, inputs: list[Any], context: RowContext) -> list[float]:
        dimension = self.get_config("dimension")
        vector = [0.0] * dimension
        for token in _TOKEN.findall((inputs[0] or "").lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % dimension
            vector[bucket] += 1.0 if digest[4] & 1 else -1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]
