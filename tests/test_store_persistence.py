"""
Test cases for store export/import and rejection of malformed payloads.
"""

import json

import numpy as np
import pytest

from quantmem.core.errors import IntegrityError
from quantmem.vector import (
    QuantizedVectorStore,
    create_product_quantized_store,
    create_scalar4bit_store,
    create_scalar8bit_store,
)


@pytest.fixture
def populated_store(random_vectors):
    """8-bit cosine store with metadata on every row."""
    store = create_scalar8bit_store(64)
    store.insert_batch([(f"v{i}", vector, {"i": i}) for i, vector in enumerate(random_vectors[:30])])
    return store


@pytest.fixture
def trained_product_store(random_vectors):
    store = create_product_quantized_store(64, num_subspaces=8, num_centroids=16, metric="l2")
    store.train(random_vectors)
    store.insert_batch([(f"v{i}", vector) for i, vector in enumerate(random_vectors[:30])])
    return store


def _top(store, query, k=1):
    return [(result.id, result.distance) for result in store.search(query, k)]


class TestRoundTrip:
    """Test export followed by import reproduces the store."""

    def test_scalar_round_trip(self, populated_store, random_vectors):
        """Test count, ids, metadata and the top result survive a round trip."""
        restored = QuantizedVectorStore.from_json(populated_store.export())

        assert len(restored) == len(populated_store)
        assert restored.ids() == populated_store.ids()
        assert restored.get_metadata("v7") == {"i": 7}

        query = random_vectors[50]
        original_top = _top(populated_store, query)
        restored_top = _top(restored, query)
        assert restored_top[0][0] == original_top[0][0]
        assert restored_top[0][1] == pytest.approx(original_top[0][1], abs=1e-9)

    def test_4bit_odd_dimension_round_trip(self, rng):
        """Test packed 4-bit rows with a padding nibble import cleanly."""
        store = create_scalar4bit_store(7, metric="l2")
        vectors = rng.standard_normal((5, 7)).astype(np.float32)
        store.insert_batch([(f"r{i}", vector) for i, vector in enumerate(vectors)])

        restored = QuantizedVectorStore.from_json(store.export())

        assert restored.search(vectors[2], 1)[0].id == store.search(vectors[2], 1)[0].id

    def test_product_round_trip(self, trained_product_store, random_vectors):
        """Test codebooks and codes are restored so the store is usable immediately."""
        restored = QuantizedVectorStore.from_json(trained_product_store.export())

        assert restored.is_ready()
        assert restored.ids() == trained_product_store.ids()
        for i in (0, 9, 21):
            assert _top(restored, random_vectors[i], 3) == _top(trained_product_store, random_vectors[i], 3)

        restored.insert("new", random_vectors[90])
        assert "new" in restored

    def test_untrained_product_store_round_trip(self):
        """Test an empty untrained product store exports without codebooks."""
        store = create_product_quantized_store(16, num_subspaces=4, num_centroids=4)
        document = json.loads(store.export())

        assert "codebooks" not in document
        restored = QuantizedVectorStore.from_json(document)
        assert not restored.is_ready()

    def test_import_json_replaces_contents(self, populated_store, random_vectors):
        """Test import_json swaps an existing store's rows for the payload's."""
        target = create_scalar8bit_store(64)
        target.insert("stale", random_vectors[99])

        target.import_json(populated_store.export())

        assert "stale" not in target
        assert len(target) == 30

    def test_export_preserves_insertion_order_after_remove(self, populated_store):
        """Test export lists rows by insertion order even after swap-removal."""
        populated_store.remove("v0")
        document = json.loads(populated_store.export())

        assert [entry["id"] for entry in document["vectors"]] == [f"v{i}" for i in range(1, 30)]

    def test_document_layout(self, populated_store):
        """Test the exported document carries version, config, ranges and codes."""
        document = json.loads(populated_store.export())

        assert document["format_version"] == 1
        assert document["config"]["dimension"] == 64
        assert document["ranges"]["bits"] == 8
        assert len(document["ranges"]["mins"]) == 64
        assert len(document["vectors"][0]["quantized"]["codes"]) == 64
        assert "norm" not in document["vectors"][0]["quantized"]


class TestMalformedImports:
    """Test import validation rejects bad payloads without touching the target."""

    @pytest.fixture
    def document(self, populated_store):
        return json.loads(populated_store.export())

    @pytest.fixture
    def target(self, random_vectors):
        store = create_scalar8bit_store(64)
        store.insert("keep", random_vectors[0])
        return store

    def _assert_rejected(self, target, payload):
        with pytest.raises(IntegrityError):
            target.import_json(payload)
        assert target.ids() == ["keep"]

    def test_garbage_text(self, target):
        """Test text that is not JSON is rejected."""
        self._assert_rejected(target, "definitely not json")

    def test_code_out_of_byte_range(self, target, document):
        """Test a code above 255 is rejected."""
        document["vectors"][0]["quantized"]["codes"][0] = 256
        self._assert_rejected(target, document)

    def test_non_numeric_code(self, target, document):
        """Test a string code is rejected."""
        document["vectors"][0]["quantized"]["codes"][0] = "7"
        self._assert_rejected(target, document)

    def test_code_length_mismatch(self, target, document):
        """Test a row with too many codes is rejected."""
        document["vectors"][3]["quantized"]["codes"].append(0)
        self._assert_rejected(target, document)

    def test_duplicate_ids(self, target, document):
        """Test two entries with the same id are rejected."""
        document["vectors"][1]["id"] = document["vectors"][0]["id"]
        self._assert_rejected(target, document)

    def test_missing_ranges(self, target, document):
        """Test scalar entries without ranges are rejected."""
        del document["ranges"]
        self._assert_rejected(target, document)

    def test_short_ranges(self, target, document):
        """Test ranges that do not cover every dimension are rejected."""
        document["ranges"]["mins"] = document["ranges"]["mins"][:10]
        document["ranges"]["maxs"] = document["ranges"]["maxs"][:10]
        self._assert_rejected(target, document)

    def test_inverted_ranges(self, target, document):
        """Test a max below its min is rejected."""
        document["ranges"]["maxs"][0] = document["ranges"]["mins"][0] - 1.0
        self._assert_rejected(target, document)

    def test_unknown_format_version(self, target, document):
        """Test an unsupported format version is rejected."""
        document["format_version"] = 2
        self._assert_rejected(target, document)

    def test_unexpected_field(self, target, document):
        """Test unknown top-level fields are rejected."""
        document["extra"] = True
        self._assert_rejected(target, document)

    def test_entry_count_above_capacity(self, target, document):
        """Test more entries than the payload's max_vectors is rejected."""
        document["config"]["max_vectors"] = 5
        self._assert_rejected(target, document)

    def test_dimension_mismatch(self, target, rng):
        """Test a payload for another dimension is rejected."""
        other = create_scalar8bit_store(32)
        other.insert("x", rng.standard_normal(32))
        self._assert_rejected(target, other.export())

    def test_norm_on_scalar_entry(self, target, document):
        """Test a product-style norm on a scalar entry is rejected."""
        document["vectors"][0]["quantized"]["norm"] = 1.0
        self._assert_rejected(target, document)

    def test_string_dimension(self, target, document):
        """Test a config dimension given as a string is rejected rather than coerced."""
        document["config"]["dimension"] = "64"
        self._assert_rejected(target, document)

    def test_string_retain_vectors(self, target, document):
        """Test a config flag given as a string is rejected rather than coerced."""
        document["config"]["retain_vectors"] = "yes"
        self._assert_rejected(target, document)

    def test_from_json_rejects_coercible_config(self, document):
        """Test from_json refuses config values that only parse after coercion."""
        document["config"].update({"dimension": "64", "max_vectors": "100"})
        with pytest.raises(IntegrityError):
            QuantizedVectorStore.from_json(json.dumps(document))


class TestMalformedProductImports:
    """Test product payload checks."""

    @pytest.fixture
    def document(self, trained_product_store):
        return json.loads(trained_product_store.export())

    def test_code_beyond_centroids(self, document):
        """Test a code that does not address a centroid is rejected."""
        document["vectors"][0]["quantized"]["codes"][0] = 16
        with pytest.raises(IntegrityError):
            QuantizedVectorStore.from_json(document)

    def test_missing_norm(self, document):
        """Test product entries must carry their norm."""
        del document["vectors"][0]["quantized"]["norm"]
        with pytest.raises(IntegrityError):
            QuantizedVectorStore.from_json(document)

    def test_missing_codebooks(self, document):
        """Test product entries without codebooks are rejected."""
        del document["codebooks"]
        with pytest.raises(IntegrityError):
            QuantizedVectorStore.from_json(document)

    def test_codebook_config_mismatch(self, document):
        """Test codebooks trained for another centroid count are rejected."""
        document["config"]["product_config"]["num_centroids"] = 8
        with pytest.raises(IntegrityError):
            QuantizedVectorStore.from_json(document)

    def test_truncated_codebook(self, document):
        """Test a codebook missing a subspace is rejected."""
        document["codebooks"]["codebooks"].pop()
        with pytest.raises(IntegrityError):
            QuantizedVectorStore.from_json(document)

    def test_string_num_subspaces(self, document):
        """Test product settings given as strings are rejected rather than coerced."""
        document["config"]["product_config"]["num_subspaces"] = "8"
        with pytest.raises(IntegrityError):
            QuantizedVectorStore.from_json(json.dumps(document))

    def test_negative_norm(self, document):
        """Test a negative norm is rejected."""
        document["vectors"][0]["quantized"]["norm"] = -1.0
        with pytest.raises(IntegrityError):
            QuantizedVectorStore.from_json(document)
