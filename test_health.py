def test_health(client):
    resp = client.get('/health')
    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'ok'
    assert body['database'] == 'connected'
    assert body['total_books'] == 0
    assert body['live_connections'] == 0
