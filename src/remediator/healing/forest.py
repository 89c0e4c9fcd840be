"""Isolation Forest for unsupervised anomaly scoring.

Anomalies are few and different, so random axis-parallel partitioning
isolates them in fewer splits than ordinary points. Each tree is grown on a
small subsample; the score of a point is derived from its average path
length across the ensemble. No labels are used while building trees.

Pure-Python on purpose: the feature vectors are 7-dimensional and the
subsamples tiny, so the stdlib ``random``/``math`` are sufficient.
"""

from __future__ import annotations

import math
import random
from collections.abc import Sequence
from dataclasses import dataclass

EULER_GAMMA = 0.5772156649015329
MAX_SUBSAMPLE_SIZE = 256


def average_path_length(n: int) -> float:
    """Average path length of an unsuccessful BST search over ``n`` points.

    Used both to normalise scores and to credit leaves that still hold more
    than one point when the depth limit stopped growth.
    """
    if n <= 1:
        return 0.0
    if n == 2:
        return 1.0
    return 2.0 * (math.log(n - 1) + EULER_GAMMA) - 2.0 * (n - 1) / n


@dataclass
class _Node:
    size: int
    feature: int | None = None
    split: float = 0.0
    left: _Node | None = None
    right: _Node | None = None

    @property
    def is_leaf(self) -> bool:
        return self.feature is None


class IsolationTree:
    """A single random-partition tree."""

    def __init__(self, max_depth: int, rng: random.Random) -> None:
        self._max_depth = max_depth
        self._rng = rng
        self._root: _Node | None = None

    def fit(self, data: Sequence[Sequence[float]]) -> IsolationTree:
        self._root = self._build(list(data), 0)
        return self

    def _build(self, data: list[Sequence[float]], depth: int) -> _Node:
        if len(data) <= 1 or depth >= self._max_depth:
            return _Node(size=len(data))

        ranges: list[tuple[int, float, float]] = []
        for feature in range(len(data[0])):
            column = [row[feature] for row in data]
            low, high = min(column), max(column)
            if high > low:
                ranges.append((feature, low, high))

        # Every remaining point is identical: nothing left to isolate.
        if not ranges:
            return _Node(size=len(data))

        feature, low, high = self._rng.choice(ranges)
        split = self._rng.uniform(low, high)
        left = [row for row in data if row[feature] < split]
        right = [row for row in data if row[feature] >= split]

        return _Node(
            size=len(data),
            feature=feature,
            split=split,
            left=self._build(left, depth + 1),
            right=self._build(right, depth + 1),
        )

    def path_length(self, instance: Sequence[float]) -> float:
        if self._root is None:
            raise RuntimeError("IsolationTree is not fitted")

        node = self._root
        depth = 0
        while not node.is_leaf:
            assert node.feature is not None
            branch = node.left if instance[node.feature] < node.split else node.right
            assert branch is not None
            node = branch
            depth += 1
        return depth + average_path_length(node.size)


class IsolationForest:
    """Ensemble of isolation trees.

    Args:
        n_features: Expected dimensionality of every vector.
        n_trees: Number of trees in the ensemble.
        subsample_size: Points per tree; defaults to ``min(256, 2 * n_features)``.
        random_state: Seed (or ``random.Random``) for reproducible forests.
    """

    def __init__(
        self,
        n_features: int,
        n_trees: int = 100,
        subsample_size: int | None = None,
        random_state: int | random.Random | None = None,
    ) -> None:
        if n_features < 1:
            raise ValueError("n_features must be >= 1")
        if n_trees < 1:
            raise ValueError("n_trees must be >= 1")
        self.n_features = n_features
        self.n_trees = n_trees
        self.subsample_size = subsample_size or min(MAX_SUBSAMPLE_SIZE, 2 * n_features)
        self._rng = (
            random_state if isinstance(random_state, random.Random) else random.Random(random_state)
        )
        # (trees, points drawn per tree), replaced as a unit on refit
        self._model: tuple[list[IsolationTree], int] = ([], 0)

    @property
    def is_fitted(self) -> bool:
        return bool(self._model[0])

    @property
    def sample_size(self) -> int:
        """Points actually drawn per tree during the last fit."""
        return self._model[1]

    def fit(self, data: Sequence[Sequence[float]]) -> IsolationForest:
        rows = [list(map(float, row)) for row in data]
        if not rows:
            raise ValueError("Cannot fit an isolation forest on empty data")
        for row in rows:
            if len(row) != self.n_features:
                raise ValueError(f"Expected {self.n_features} features, got {len(row)}")

        sample_size = min(self.subsample_size, len(rows))
        max_depth = math.ceil(math.log2(max(sample_size, 2)))

        trees: list[IsolationTree] = []
        for _ in range(self.n_trees):
            sample = self._rng.sample(rows, sample_size)
            trees.append(IsolationTree(max_depth, self._rng).fit(sample))

        self._model = (trees, sample_size)
        return self

    def average_path_length(self, instance: Sequence[float]) -> float:
        return self._path_and_size(instance)[0]

    def _path_and_size(self, instance: Sequence[float]) -> tuple[float, int]:
        trees, sample_size = self._model
        if not trees:
            raise RuntimeError("IsolationForest is not fitted")
        if len(instance) != self.n_features:
            raise ValueError(f"Expected {self.n_features} features, got {len(instance)}")
        return sum(tree.path_length(instance) for tree in trees) / len(trees), sample_size

    def score(self, instance: Sequence[float]) -> float:
        """Anomaly score in [0, 1]; shorter average paths score closer to 1."""
        avg_path, sample_size = self._path_and_size(instance)
        normaliser = average_path_length(sample_size)
        if normaliser <= 0:
            return 0.5
        return min(1.0, max(0.0, 2.0 ** (-avg_path / normaliser)))
