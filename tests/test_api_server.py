"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Integration tests for the REST API through the Flask test client.
"""

import base64
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nn_playground import api_server


SMALL_PLAYGROUND = {
    'network': {'hidden_dims': [4], 'hidden_activations': ['relu']},
    'training': {'num_epochs': 5, 'batch_size': 8},
    'data': {'samples': 30, 'seed': 0, 'grid_size': 5},
}


@pytest.fixture
def client():
    api_server.app.config['TESTING'] = True
    api_server.playgrounds.clear()
    api_server.training_tasks.clear()
    with api_server.app.test_client() as test_client:
        yield test_client
    api_server.playgrounds.clear()


@pytest.fixture
def playground_id(client):
    response = client.post('/api/playgrounds', json=SMALL_PLAYGROUND)
    assert response.status_code == 201
    return response.get_json()['playground_id']


def run_training(client, playground_id, body=None):
    response = client.post(f'/api/playgrounds/{playground_id}/train', json=body or {})
    task = api_server.training_tasks.get(playground_id)
    if task is not None:
        task.join(timeout=30)
    return response


@pytest.mark.integration
class TestPlaygroundLifecycle:

    def test_status(self, client, playground_id):
        data = client.get('/api/status').get_json()

        assert data['status'] == 'online'
        assert data['playgrounds'] == 1
        assert data['training_jobs'] == 0

    def test_create_returns_initialized_summary(self, client):
        response = client.post('/api/playgrounds', json=SMALL_PLAYGROUND)
        data = response.get_json()

        assert response.status_code == 201
        assert data['status'] == 'initialized'
        assert data['network']['hidden_dims'] == [4]
        assert data['training']['num_epochs'] == 5

    def test_create_with_defaults(self, client):
        response = client.post('/api/playgrounds')

        assert response.status_code == 201
        assert response.get_json()['network']['hidden_dims'] == [10, 5]

    def test_create_invalid_config_is_400(self, client):
        response = client.post('/api/playgrounds', json={'training': {'learning_rate': -1}})

        assert response.status_code == 400
        assert 'error' in response.get_json()

    def test_list_and_delete(self, client, playground_id):
        listed = client.get('/api/playgrounds').get_json()['playgrounds']
        assert [p['playground_id'] for p in listed] == [playground_id]

        assert client.delete(f'/api/playgrounds/{playground_id}').status_code == 200
        assert client.get(f'/api/playgrounds/{playground_id}').status_code == 404
        assert client.delete(f'/api/playgrounds/{playground_id}').status_code == 404

    def test_unknown_playground_is_404(self, client):
        for method, path in [
            ('get', '/api/playgrounds/missing'),
            ('post', '/api/playgrounds/missing/train'),
            ('post', '/api/playgrounds/missing/stop'),
            ('post', '/api/playgrounds/missing/reset'),
            ('get', '/api/playgrounds/missing/history'),
            ('put', '/api/playgrounds/missing/optimizer'),
        ]:
            assert getattr(client, method)(path, json={}).status_code == 404


@pytest.mark.integration
class TestTrainingEndpoints:

    def test_train_runs_to_completion(self, client, playground_id):
        response = run_training(client, playground_id)

        assert response.status_code == 202
        state = client.get(f'/api/playgrounds/{playground_id}').get_json()
        assert state['status'] == 'completed'
        assert state['current_epoch'] == 4
        assert state['last_loss'] is not None

    def test_train_overrides_training_config(self, client, playground_id):
        run_training(client, playground_id, {'num_epochs': 3})

        history = client.get(f'/api/playgrounds/{playground_id}/history').get_json()['history']
        assert history['epochs'] == [0, 1, 2]

    def test_train_while_training_is_409(self, client, playground_id):
        api_server.playgrounds[playground_id].state.is_training = True
        try:
            response = client.post(f'/api/playgrounds/{playground_id}/train')
        finally:
            api_server.playgrounds[playground_id].state.is_training = False

        assert response.status_code == 409

    def test_invalid_training_override_is_400(self, client, playground_id):
        response = client.post(f'/api/playgrounds/{playground_id}/train', json={'batch_size': 0})
        assert response.status_code == 400

    def test_history_is_json(self, client, playground_id):
        run_training(client, playground_id)

        history = client.get(f'/api/playgrounds/{playground_id}/history').get_json()['history']
        assert len(history['loss']) == 5
        assert len(history['predictions'][0]) == 25
        assert history['prediction_epochs'][-1] == 4

    def test_reset_zeroes_progress(self, client, playground_id):
        run_training(client, playground_id)

        data = client.post(f'/api/playgrounds/{playground_id}/reset').get_json()

        assert data['status'] == 'initialized'
        assert data['current_epoch'] == 0
        assert data['progress'] == 0.0

    def test_stop_when_idle(self, client, playground_id):
        response = client.post(f'/api/playgrounds/{playground_id}/stop')
        assert response.status_code == 200

    def test_surface_image(self, client, playground_id):
        run_training(client, playground_id)

        response = client.get(f'/api/playgrounds/{playground_id}/surface')
        data = response.get_json()

        assert response.status_code == 200
        assert base64.b64decode(data['image_data'])[:8] == b'\x89PNG\r\n\x1a\n'


@pytest.mark.integration
class TestConfigEndpoints:

    def test_update_config(self, client, playground_id):
        response = client.put(f'/api/playgrounds/{playground_id}/config', json={
            'network': {'hidden_dims': [3, 3]},
            'training': {'learning_rate': 0.05},
        })
        data = response.get_json()

        assert response.status_code == 200
        assert data['network']['hidden_activations'] == ['relu', 'relu']
        assert data['training']['learning_rate'] == pytest.approx(0.05)

    def test_update_config_invalid_is_400(self, client, playground_id):
        response = client.put(f'/api/playgrounds/{playground_id}/config', json={
            'data': {'test_ratio': 1.5}
        })
        assert response.status_code == 400

    def test_set_optimizer(self, client, playground_id):
        response = client.put(f'/api/playgrounds/{playground_id}/optimizer', json={'optimizer': 'vsgd'})

        assert response.status_code == 200
        assert response.get_json()['network']['optimizer'] == 'vsgd'

    def test_set_unknown_optimizer_is_400(self, client, playground_id):
        response = client.put(f'/api/playgrounds/{playground_id}/optimizer', json={'optimizer': 'lion'})
        assert response.status_code == 400

    def test_set_weight_initializer(self, client, playground_id):
        response = client.put(
            f'/api/playgrounds/{playground_id}/weight_initializer', json={'initializer': 'xavier'}
        )
        assert response.get_json()['network']['layer_initializers'] == ['xavier', 'xavier']

    def test_set_layer_initializer(self, client, playground_id):
        response = client.put(
            f'/api/playgrounds/{playground_id}/layers/1/initializer', json={'initializer': 'zero'}
        )

        assert response.status_code == 200
        assert response.get_json()['network']['layer_initializers'] == ['he', 'zero']
        assert client.put(
            f'/api/playgrounds/{playground_id}/layers/7/initializer', json={'initializer': 'zero'}
        ).status_code == 400

    def test_set_normalization(self, client, playground_id):
        response = client.put(
            f'/api/playgrounds/{playground_id}/normalization', json={'use_normalization': True}
        )

        assert response.status_code == 200
        assert response.get_json()['data']['use_normalization'] is True
        assert api_server.playgrounds[playground_id].state.scaler is not None

        bad = client.put(f'/api/playgrounds/{playground_id}/normalization', json={'use_normalization': 'yes'})
        assert bad.status_code == 400
