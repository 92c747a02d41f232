from urllib.parse import parse_qs, urlparse


def test_strava_authorize_url_generation(client):
    response = client.get("/v1/integrations/strava/connect")
    assert response.status_code == 200

    authorize_url = response.json()["authorize_url"]

    parsed = urlparse(authorize_url)
    assert parsed.scheme == "https"
    assert parsed.netloc == "www.strava.com"
    assert parsed.path == "/oauth/authorize"

    params = parse_qs(parsed.query)

    assert params["client_id"] == ["12345"]
    assert params["response_type"] == ["code"]
    assert params["scope"] == ["read,activity:read_all"]
    assert params["redirect_uri"] == ["https://example.com/strava/callback"]
    assert len(params["state"][0]) == 32

    state_cookie = response.cookies.get("strava_oauth_state")
    assert state_cookie == params["state"][0]


def test_each_connect_uses_a_fresh_state(client):
    first = client.get("/v1/integrations/strava/connect").cookies.get("strava_oauth_state")
    second = client.get("/v1/integrations/strava/connect").cookies.get("strava_oauth_state")

    assert first and second
    assert first != second
