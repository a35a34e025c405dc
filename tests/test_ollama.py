from unittest import mock

import pytest
import requests

from backend import ollama


def _response(body: dict, status: int = 200) -> mock.Mock:
    resp = mock.Mock()
    resp.json.return_value = body
    if status >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(
            response=mock.Mock(status_code=status)
        )
    return resp


def test_extract_json_recovers_wrapped_object():
    text = 'Sure! Here it is:\n{"category_name": "Geral", "confidence": 0.5}\nThanks'
    assert ollama._extract_json(text) == {"category_name": "Geral", "confidence": 0.5}


@pytest.mark.parametrize("text", ["", "no json here", "[1, 2]"])
def test_extract_json_rejects_non_objects(text):
    with pytest.raises(ValueError):
        ollama._extract_json(text)


def test_generate_json_posts_json_format(monkeypatch):
    monkeypatch.setattr(ollama, "OLLAMA_DISABLE", False)
    body = {"response": '{"category_name": "Economia"}'}
    with mock.patch.object(ollama.requests, "post", return_value=_response(body)) as post:
        result = ollama.generate_json("classify this", model="tiny")

    assert result == {"category_name": "Economia"}
    payload = post.call_args.kwargs["json"]
    assert payload["model"] == "tiny"
    assert payload["format"] == "json"
    assert payload["stream"] is False
    assert post.call_args.args[0].endswith("/api/generate")


def test_generate_json_maps_connection_errors(monkeypatch):
    monkeypatch.setattr(ollama, "OLLAMA_DISABLE", False)
    with mock.patch.object(ollama.requests, "post", side_effect=requests.exceptions.ConnectionError()):
        with pytest.raises(ollama.LLMUnavailable):
            ollama.generate_json("x")


def test_generate_json_maps_http_errors(monkeypatch):
    monkeypatch.setattr(ollama, "OLLAMA_DISABLE", False)
    with mock.patch.object(ollama.requests, "post", return_value=_response({}, status=500)):
        with pytest.raises(ollama.LLMError, match="status=500"):
            ollama.generate_json("x")


def test_disabled_model_is_unavailable(monkeypatch):
    monkeypatch.setattr(ollama, "OLLAMA_DISABLE", True)
    with mock.patch.object(ollama.requests, "post") as post:
        with pytest.raises(ollama.LLMUnavailable):
            ollama.generate_json("x")
    post.assert_not_called()


def test_clean_text_strips_tags():
    assert ollama.clean_text("<p>Olá   <b>mundo</b></p>") == "Olá mundo"
    assert ollama.clean_text(None) == ""
