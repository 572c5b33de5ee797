"""
test_model_persistence.py
~~~~~~~~~~~~~~~~~~~~~~~~~~

Tests for the SQLite network store.
"""

import os
import sqlite3

import numpy as np
import pytest

from conftest import StaticDataLayer, build_network

from ffnet.network import Network
from ffnet.optimizers import OptimizerConfig
from ffnet.model_persistence import (
    DB_FILENAME,
    ModelDatabase,
    delete_network,
    delete_old_networks,
    get_network_metadata,
    list_saved_networks,
    load_network,
    save_network,
)


@pytest.fixture
def store(tmp_path):
    """Directory for an isolated networks.db."""
    return str(tmp_path / "store")


def backdate(store, network_id, modifier):
    """Shift a row's created_at by an SQLite modifier such as '-3 days'."""
    conn = sqlite3.connect(os.path.join(store, DB_FILENAME))
    with conn:
        conn.execute(
            "UPDATE networks SET created_at = datetime('now', ?) WHERE network_id = ?",
            (modifier, network_id)
        )
    conn.close()


@pytest.mark.unit
class TestSaveAndLoad:

    def test_first_save_creates_database_file(self, simple_network, store):
        assert save_network(simple_network, "fresh", model_dir=store, trained=False)
        assert os.path.isfile(os.path.join(store, DB_FILENAME))

    def test_metadata_describes_network(self, trained_network, store):
        save_network(trained_network, "described", model_dir=store, accuracy=0.85)

        meta = get_network_metadata("described", store)

        assert meta['network_id'] == "described"
        assert meta['trained'] is True
        assert meta['accuracy'] == 0.85
        assert meta['architecture'] == [3, 4, 2]
        assert meta['iterations'] == 5
        assert meta['final_loss'] == pytest.approx(trained_network.loss[-1])
        assert meta['optimizer']['kind'] == 'sgd'
        assert meta['weights_shape'] == [[4, 4], [5, 2]]
        assert [layer['type'] for layer in meta['layers']] == [
            'Linear', 'ReLU', 'Linear', 'SoftMax'
        ]

    def test_loaded_network_has_no_data_source(self, simple_network, store):
        save_network(simple_network, "detached", model_dir=store)
        restored = load_network("detached", store)

        assert isinstance(restored, Network)
        assert restored.sizes == [3, 4, 2]
        assert restored.data_layer is None

    def test_weights_and_optimizer_state_survive(self, small_batch, store):
        net = build_network(
            [3, 4, 2], StaticDataLayer(*small_batch),
            optimizer=OptimizerConfig(kind='momentum', learning_rate=0.05)
        )
        net.train(3)

        save_network(net, "momentum", model_dir=store)
        restored = load_network("momentum", store)

        for original, copy in zip(net.layers, restored.layers):
            if original.is_trainable():
                assert np.array_equal(original.weights, copy.weights)

        # velocity came along, so the next step matches exactly
        restored.attach_data(StaticDataLayer(*small_batch))
        assert restored.train(1) == net.train(1)

    def test_resave_keeps_creation_time(self, simple_network, store):
        save_network(simple_network, "evolving", model_dir=store, trained=False)
        before = get_network_metadata("evolving", store)

        simple_network.train(2)
        save_network(simple_network, "evolving", model_dir=store, accuracy=0.88)
        after = get_network_metadata("evolving", store)

        assert (before['trained'], before['iterations'], before['final_loss']) == (False, 0, None)
        assert (after['trained'], after['iterations'], after['accuracy']) == (True, 2, 0.88)
        assert after['created_at'] == before['created_at']
        assert len(list_saved_networks(store)) == 1


@pytest.mark.unit
class TestListAndDelete:

    def test_empty_store(self, store):
        assert list_saved_networks(store) == []

    def test_lists_every_network(self, simple_network, store):
        save_network(simple_network, "a", model_dir=store, accuracy=0.9)
        save_network(simple_network, "b", model_dir=store, trained=False)

        listed = list_saved_networks(store)

        assert sorted(entry['network_id'] for entry in listed) == ["a", "b"]
        assert all({'created_at', 'updated_at'} <= set(entry) for entry in listed)

    def test_delete_removes_row(self, simple_network, store):
        save_network(simple_network, "doomed", model_dir=store)

        assert delete_network("doomed", store) is True
        assert load_network("doomed", store) is None
        assert delete_network("doomed", store) is False


@pytest.mark.unit
class TestRejectedInput:

    @pytest.mark.parametrize('bad_id', ["", None, 42])
    def test_bad_ids(self, simple_network, store, bad_id):
        assert save_network(simple_network, bad_id, model_dir=store) is False
        assert load_network(bad_id, store) is None
        assert get_network_metadata(bad_id, store) is None
        assert delete_network(bad_id, store) is False

    def test_missing_network(self, store):
        assert load_network("ghost", store) is None
        assert get_network_metadata("ghost", store) is None

    def test_accuracy_out_of_range(self, simple_network, store):
        assert save_network(simple_network, "wrong", model_dir=store, accuracy=1.5) is False
        assert get_network_metadata("wrong", store) is None

        db = ModelDatabase(os.path.join(store, DB_FILENAME))
        with pytest.raises(ValueError):
            db.save_network_to_db(simple_network, "wrong", accuracy=-0.1)


@pytest.mark.integration
class TestRoundTrips:

    def test_resume_training_after_reload(self, simple_network, small_batch, store):
        save_network(simple_network, "resumed", model_dir=store, trained=False)

        net = load_network("resumed", store)
        net.attach_data(StaticDataLayer(*small_batch))
        net.train(3)
        save_network(net, "resumed", model_dir=store, accuracy=0.85)

        assert len(load_network("resumed", store).loss) == 3
        assert get_network_metadata("resumed", store)['accuracy'] == 0.85

    def test_networks_of_different_shapes(self, store):
        shapes = {
            "wide": [784, 64, 10],
            "tiny": [2, 3, 2],
            "deep": [8, 16, 16, 16, 4],
        }
        for network_id, sizes in shapes.items():
            save_network(build_network(sizes), network_id, model_dir=store)

        assert len(list_saved_networks(store)) == 3
        for network_id, sizes in shapes.items():
            assert load_network(network_id, store).sizes == sizes


@pytest.mark.unit
class TestAgeCleanup:

    def test_only_old_rows_are_removed(self, simple_network, store):
        for network_id in ("old_1", "old_2", "new_1", "new_2"):
            save_network(simple_network, network_id, model_dir=store)
        backdate(store, "old_1", '-14 days')
        backdate(store, "old_2", '-3 days')

        assert delete_old_networks(days=2, model_dir=store) == 2
        remaining = {entry['network_id'] for entry in list_saved_networks(store)}
        assert remaining == {"new_1", "new_2"}

    @pytest.mark.parametrize('days, expected', [(7, 0), (3, 1)])
    def test_threshold(self, simple_network, store, days, expected):
        save_network(simple_network, "five_days", model_dir=store)
        backdate(store, "five_days", '-5 days')

        assert delete_old_networks(days=days, model_dir=store) == expected

    def test_zero_days_removes_anything_aged(self, simple_network, store):
        save_network(simple_network, "an_hour", model_dir=store)
        backdate(store, "an_hour", '-1 hour')

        assert delete_old_networks(days=0, model_dir=store) == 1

    def test_nothing_to_remove(self, store):
        assert delete_old_networks(days=2, model_dir=store) == 0

    def test_negative_days(self, store):
        with pytest.raises(ValueError, match="non-negative"):
            delete_old_networks(days=-1, model_dir=store)
