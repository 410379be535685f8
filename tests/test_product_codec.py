"""
Test cases for the product quantizer: construction, training, encoding and codebook persistence.
"""

import asyncio
import json

import numpy as np
import pytest

from quantmem.core.config import MAX_KMEANS_ITERATIONS
from quantmem.core.errors import IntegrityError, NotTrainedError, ValidationError
from quantmem.vector.product import ProductCodec
from quantmem.vector.similarity import squared_l2


@pytest.fixture
def trained_codec(random_vectors):
    """64-dim codec with 8 subspaces and 16 centroids trained on 100 vectors."""
    codec = ProductCodec(64, num_subspaces=8, num_centroids=16, seed=42)
    codec.train(random_vectors)
    return codec


class TestConstruction:
    """Test constructor validation."""

    def test_defaults(self):
        """Test a codec picks up the default product settings."""
        codec = ProductCodec(64)
        assert codec.num_subspaces == 8
        assert codec.num_centroids == 256
        assert codec.subspace_dim == 8
        assert not codec.is_trained()

    @pytest.mark.parametrize("centroids", [1, 257])
    def test_centroids_must_fit_a_byte(self, centroids):
        """Test num_centroids outside [2, 256] is rejected."""
        with pytest.raises(ValidationError):
            ProductCodec(64, num_centroids=centroids)

    def test_dimension_must_divide(self):
        """Test a dimension not divisible by num_subspaces is rejected."""
        with pytest.raises(ValidationError):
            ProductCodec(10, num_subspaces=3)

    def test_dimension_bounds(self):
        """Test non-positive dimensions are rejected."""
        with pytest.raises(ValidationError):
            ProductCodec(0)

    def test_max_iterations_clamped(self):
        """Test an oversized iteration budget is clamped to the ceiling."""
        codec = ProductCodec(64, max_iterations=100000)
        assert codec.config.max_iterations == MAX_KMEANS_ITERATIONS

    def test_unknown_setting_rejected(self):
        """Test misspelled settings fail instead of being ignored."""
        with pytest.raises(ValidationError):
            ProductCodec(64, num_centroid=16)


class TestTraining:
    """Test codebook training."""

    def test_trains_reference_configuration(self, trained_codec, random_vectors):
        """Test the 64/8/16 configuration trains and encodes to 8 codes."""
        assert trained_codec.is_trained()
        assert trained_codec.codebooks.shape == (8, 16, 8)
        assert trained_codec.codebooks.dtype == np.float32
        assert len(trained_codec.encode(random_vectors[0]).codes) == 8

    def test_too_few_vectors(self, random_vectors):
        """Test training with fewer vectors than centroids fails."""
        codec = ProductCodec(64, num_subspaces=8, num_centroids=16)
        with pytest.raises(ValidationError):
            codec.train(random_vectors[:10])
        assert not codec.is_trained()

    def test_wrong_dimension(self, rng):
        """Test training vectors of the wrong width are rejected."""
        codec = ProductCodec(64, num_subspaces=8, num_centroids=4)
        with pytest.raises(ValidationError):
            codec.train(rng.standard_normal((20, 32)))

    def test_same_seed_same_codebooks(self, random_vectors, trained_codec):
        """Test training is reproducible for a fixed seed."""
        again = ProductCodec(64, num_subspaces=8, num_centroids=16, seed=42)
        again.train(random_vectors)
        np.testing.assert_array_equal(again.codebooks, trained_codec.codebooks)

    def test_worker_count_does_not_change_result(self, random_vectors, trained_codec):
        """Test a thread pool produces the same codebooks as sequential training."""
        parallel = ProductCodec(64, num_subspaces=8, num_centroids=16, seed=42)
        parallel.train(random_vectors, workers=4)
        np.testing.assert_array_equal(parallel.codebooks, trained_codec.codebooks)

    def test_train_async_matches_train(self, random_vectors, trained_codec):
        """Test cooperative async training produces the same codebooks."""
        codec = ProductCodec(64, num_subspaces=8, num_centroids=16, seed=42)

        async def _run():
            await codec.train_async(random_vectors)

        asyncio.run(_run())
        np.testing.assert_array_equal(codec.codebooks, trained_codec.codebooks)

    def test_progress_reports_every_subspace(self, random_vectors):
        """Test the progress callback fires for each subspace."""
        codec = ProductCodec(64, num_subspaces=8, num_centroids=16, yield_every=1)
        calls = []
        codec.train(random_vectors, progress=lambda subspace, step: calls.append((subspace, step.iteration)))

        assert {subspace for subspace, _ in calls} == set(range(8))
        assert all(iteration >= 1 for _, iteration in calls)

    def test_mse_does_not_increase_with_centroids(self, random_vectors):
        """Test more centroids never reconstruct the training data worse."""
        errors = []
        for centroids in (2, 8, 32):
            codec = ProductCodec(64, num_subspaces=8, num_centroids=centroids, seed=42)
            codec.train(random_vectors)
            codes, _ = codec.encode_batch(random_vectors)
            restored = codec.decode_batch(codes)
            errors.append(float(np.mean((restored - random_vectors) ** 2)))

        assert errors[0] >= errors[1] >= errors[2]


class TestEncoding:
    """Test encode, decode and distances."""

    def test_untrained_codec_refuses_work(self, random_vectors):
        """Test encode, decode and distance calls fail before training."""
        codec = ProductCodec(64, num_subspaces=8, num_centroids=16)
        with pytest.raises(NotTrainedError):
            codec.encode(random_vectors[0])
        with pytest.raises(NotTrainedError):
            codec.decode(np.zeros(8, dtype=np.uint8))
        with pytest.raises(NotTrainedError):
            codec.precompute_distance_tables(random_vectors[0])
        with pytest.raises(NotTrainedError):
            codec.export_codebook()

    def test_encode_stores_norm(self, trained_codec, random_vectors):
        """Test the encoded form carries the original vector's L2 norm."""
        encoded = trained_codec.encode(random_vectors[3])
        assert encoded.codes.dtype == np.uint8
        assert encoded.norm == pytest.approx(float(np.linalg.norm(random_vectors[3])), rel=1e-5)

    def test_encode_batch_matches_single(self, trained_codec, random_vectors):
        """Test batch encoding agrees with encoding one vector at a time."""
        codes, norms = trained_codec.encode_batch(random_vectors[:10])
        for i in range(10):
            np.testing.assert_array_equal(codes[i], trained_codec.encode(random_vectors[i]).codes)
        assert norms.shape == (10,)

    def test_decode_concatenates_centroids(self, trained_codec, random_vectors):
        """Test decoding picks the assigned centroid in every subspace."""
        encoded = trained_codec.encode(random_vectors[0])
        restored = trained_codec.decode(encoded)

        assert restored.shape == (64,)
        for subspace, code in enumerate(encoded.codes):
            np.testing.assert_array_equal(
                restored[subspace * 8:(subspace + 1) * 8], trained_codec.codebooks[subspace, code]
            )

    def test_asymmetric_distance_matches_decoded(self, trained_codec, random_vectors):
        """Test the subspace sum equals the distance to the reconstruction."""
        query = random_vectors[50]
        encoded = trained_codec.encode(random_vectors[1])

        expected = squared_l2(query, trained_codec.decode(encoded))
        assert trained_codec.asymmetric_distance(query, encoded) == pytest.approx(expected, rel=1e-5)

    def test_table_distance_matches_direct(self, trained_codec, random_vectors):
        """Test table lookups reproduce the direct asymmetric distance."""
        query = random_vectors[99]
        tables = trained_codec.precompute_distance_tables(query)
        assert tables.shape == (8, 16)

        for vector in random_vectors[:20]:
            encoded = trained_codec.encode(vector)
            assert trained_codec.distance_from_tables(tables, encoded) == pytest.approx(
                trained_codec.asymmetric_distance(query, encoded), rel=1e-9
            )

    def test_batched_table_lookup(self, trained_codec, random_vectors):
        """Test distances_from_tables scores many code rows at once."""
        tables = trained_codec.precompute_distance_tables(random_vectors[0])
        codes, _ = trained_codec.encode_batch(random_vectors[:15])

        batched = trained_codec.distances_from_tables(tables, codes)
        single = [trained_codec.distance_from_tables(tables, row) for row in codes]
        np.testing.assert_allclose(batched, single)

    def test_inner_product_tables(self, trained_codec, random_vectors):
        """Test inner-product lookups equal the dot product with the reconstruction."""
        query = random_vectors[7]
        encoded = trained_codec.encode(random_vectors[8])
        tables = trained_codec.precompute_inner_product_tables(query)

        expected = float(np.dot(query.astype(np.float64), trained_codec.decode(encoded).astype(np.float64)))
        assert trained_codec.distance_from_tables(tables, encoded) == pytest.approx(expected, rel=1e-6)

    def test_out_of_range_codes(self, trained_codec):
        """Test codes beyond num_centroids are rejected."""
        with pytest.raises(ValidationError):
            trained_codec.decode(np.full(8, 16, dtype=np.uint8))
        with pytest.raises(ValidationError):
            trained_codec.decode(np.zeros(7, dtype=np.uint8))

    def test_compression_ratio_and_stats(self, trained_codec):
        """Test the ratio formula and the reported statistics."""
        assert trained_codec.compression_ratio() == pytest.approx(64 * 4 / 12)
        stats = trained_codec.get_stats()
        assert stats["trained"] is True
        assert stats["subspace_dim"] == 8
        assert stats["codebook_bytes"] == 8 * 16 * 8 * 4


class TestCodebookPersistence:
    """Test codebook export and validated import."""

    def test_round_trip(self, trained_codec, random_vectors):
        """Test an imported codebook encodes and decodes identically."""
        restored = ProductCodec(64, num_subspaces=8, num_centroids=16)
        restored.import_codebook(trained_codec.export_codebook())

        assert restored.is_trained()
        np.testing.assert_array_equal(restored.codebooks, trained_codec.codebooks)
        for vector in random_vectors[:5]:
            np.testing.assert_array_equal(restored.encode(vector).codes, trained_codec.encode(vector).codes)

    def test_shape_mismatch_with_codec(self, trained_codec):
        """Test a codebook for a different centroid count is rejected."""
        other = ProductCodec(64, num_subspaces=8, num_centroids=8)
        with pytest.raises(IntegrityError):
            other.import_codebook(trained_codec.export_codebook())
        assert not other.is_trained()

    def test_missing_centroid(self, trained_codec):
        """Test a subspace with too few centroids is rejected."""
        document = json.loads(trained_codec.export_codebook())
        document["codebooks"][0].pop()

        codec = ProductCodec(64, num_subspaces=8, num_centroids=16)
        with pytest.raises(IntegrityError):
            codec.import_codebook(json.dumps(document))
        assert not codec.is_trained()

    def test_short_centroid(self, trained_codec):
        """Test a centroid with missing coordinates is rejected."""
        document = json.loads(trained_codec.export_codebook())
        document["codebooks"][2][5] = document["codebooks"][2][5][:3]

        with pytest.raises(IntegrityError):
            ProductCodec(64, num_subspaces=8, num_centroids=16).import_codebook(document)

    def test_non_numeric_coordinate(self, trained_codec):
        """Test a string coordinate is rejected."""
        document = json.loads(trained_codec.export_codebook())
        document["codebooks"][1][0][0] = "0.5"

        with pytest.raises(IntegrityError):
            ProductCodec(64, num_subspaces=8, num_centroids=16).import_codebook(document)

    def test_nan_coordinate(self, trained_codec):
        """Test NaN coordinates are rejected."""
        document = json.loads(trained_codec.export_codebook())
        document["codebooks"][1][0][0] = float("nan")

        with pytest.raises(IntegrityError):
            ProductCodec(64, num_subspaces=8, num_centroids=16).import_codebook(document)

    def test_float32_overflow(self, trained_codec):
        """Test coordinates too large for float32 are rejected."""
        document = json.loads(trained_codec.export_codebook())
        document["codebooks"][0][0][0] = 1e39

        with pytest.raises(IntegrityError):
            ProductCodec(64, num_subspaces=8, num_centroids=16).import_codebook(document)

    def test_invalid_json(self):
        """Test text that is not JSON is rejected."""
        with pytest.raises(IntegrityError):
            ProductCodec(64, num_subspaces=8, num_centroids=16).import_codebook("{not json")

    def test_mismatched_config_dimension(self, trained_codec):
        """Test a config that disagrees with the codebook shape is rejected."""
        document = json.loads(trained_codec.export_codebook())
        document["config"]["dimension"] = 32

        with pytest.raises(IntegrityError):
            ProductCodec(64, num_subspaces=8, num_centroids=16).import_codebook(document)
