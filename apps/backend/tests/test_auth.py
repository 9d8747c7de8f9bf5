import hostops
from fastapi.testclient import TestClient

TOKEN = "test-token"


def configure(tmp_path) -> None:
    hostops.current_config = hostops.AppConfig(
        tokens=[TOKEN, "second-token"],
        allowed_dirs=[str(tmp_path.resolve())],
        allowed_file_patterns=["*.txt", "*.sh"],
    )


def test_is_authorized_is_exact_membership() -> None:
    tokens = frozenset({"alpha", "beta"})

    assert hostops.is_authorized("alpha", tokens)
    assert hostops.is_authorized("beta", tokens)
    assert not hostops.is_authorized("ALPHA", tokens)
    assert not hostops.is_authorized("alpha ", tokens)
    assert not hostops.is_authorized("", tokens)
    assert not hostops.is_authorized(None, tokens)


def test_all_routes_answer_404_with_empty_body_without_valid_token(tmp_path) -> None:
    configure(tmp_path)
    client = TestClient(hostops.app)
    target = tmp_path / "keep.txt"
    target.write_text("still here", encoding="utf-8")

    requests = [
        (
            "POST",
            "/download",
            {"url": "https://example.com/a.txt", "path": str(target)},
        ),
        ("POST", "/run", {"path": str(tmp_path / "job.sh")}),
        ("DELETE", "/delete", {"path": str(target)}),
    ]

    for params in ({}, {"token": "wrong"}, {"token": ""}):
        for method, path, payload in requests:
            response = client.request(method, path, params=params, json=payload)
            assert response.status_code == 404, (
                f"{method} {path} with {params} should be 404, "
                f"got {response.status_code}"
            )
            assert response.content == b""

    assert target.read_text(encoding="utf-8") == "still here"


def test_any_configured_token_is_accepted(tmp_path) -> None:
    configure(tmp_path)
    client = TestClient(hostops.app)

    for token in (TOKEN, "second-token"):
        response = client.request(
            "DELETE",
            "/delete",
            params={"token": token},
            json={"path": str(tmp_path / "missing.txt")},
        )
        assert response.status_code == 200, response.text
        assert response.json() == {"success": True}


def test_token_is_checked_before_body_shape(tmp_path) -> None:
    configure(tmp_path)
    client = TestClient(hostops.app)

    response = client.post("/run", params={"token": "wrong"}, json={"path": 42})
    assert response.status_code == 404
    assert response.content == b""

    response = client.post("/run", params={"token": TOKEN}, json={"path": 42})
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid request body"}
