"""Tests for the FastAPI service."""

import base64

import pytest
from fastapi.testclient import TestClient

from novelreader import db, main, tts


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.setattr(main, "PROVIDER", tts.SilentTTSProvider())
    with TestClient(main.app) as test_client:
        yield test_client


class FailingProvider:
    name = "failing"

    async def synthesize(self, text, voice=None):
        raise RuntimeError("provider down")


def _create_novel(client, name="Tiên Nghịch"):
    response = client.post("/api/novels", json={"name": name, "author": "Nhĩ Căn", "genre": "Tiên hiệp"})
    assert response.status_code == 201
    return response.json()["novel_id"]


class TestSynthesisEndpoints:
    """/api/stream and /api/tts."""

    def test_stream_returns_mpeg(self, client):
        """Should stream silent MP3 audio for the text."""
        response = client.post("/api/stream", json={"text": "Xin chào các bạn."})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("audio/mpeg")
        assert response.content.startswith(tts.SILENT_MP3_BYTES)

    def test_stream_long_text_is_synthesized_piecewise(self, client):
        """Should cover every piece of a long text."""
        text = "Một câu khá dài để đọc thành tiếng. " * 200
        response = client.post("/api/stream", json={"text": text})

        expected = sum(tts.estimate_seconds(piece) for piece in main.split_text(text, main.SYNTHESIS_CHUNKING))
        assert len(response.content) == expected * len(tts.SILENT_MP3_BYTES)

    @pytest.mark.parametrize("body", [{"text": ""}, {"text": "   "}, {}, {"text": 5}])
    def test_stream_requires_text(self, client, body):
        """Should reject requests without text."""
        assert client.post("/api/stream", json=body).status_code == 400

    def test_stream_provider_failure(self, client, monkeypatch):
        """Should answer 500 when synthesis fails."""
        monkeypatch.setattr(main, "PROVIDER", FailingProvider())
        response = client.post("/api/stream", json={"text": "Hello."})

        assert response.status_code == 500
        assert response.json()["detail"] == "TTS synthesis failed"

    def test_tts_returns_base64(self, client):
        """Should return the audio base64-encoded."""
        response = client.post("/api/tts", json={"text": "Hello."})

        assert response.status_code == 200
        audio = base64.b64decode(response.json()["audioContent"])
        assert audio == tts.SILENT_MP3_BYTES


class TestNovelEndpoints:
    """Novel and chapter routes."""

    def test_create_and_list_novels(self, client):
        """Should list created novels."""
        novel_id = _create_novel(client)
        novels = client.get("/api/novels").json()

        assert [n["id"] for n in novels] == [novel_id]
        assert novels[0]["novel_name"] == "Tiên Nghịch"
        assert novels[0]["novel_author"] == "Nhĩ Căn"

    def test_create_requires_name(self, client):
        """Should reject a novel without a name."""
        assert client.post("/api/novels", json={"author": "x"}).status_code == 400

    def test_upload_and_read_chapters(self, client):
        """Should parse uploaded text into readable chapters."""
        novel_id = _create_novel(client)
        text = "Chương 1: Mở đầu\nNội dung một.\nChương 2: Tiếp theo\nNội dung hai."

        response = client.post(f"/api/novel/{novel_id}/upload", json={"text": text})
        assert response.json() == {"parsed": 2, "inserted": 2, "updated": 0, "skipped": 0}

        chapters = client.get(f"/api/novel/{novel_id}/chapters").json()
        assert [(c["chapter_number"], c["chapter_name"]) for c in chapters] == [(1, "Mở đầu"), (2, "Tiếp theo")]
        assert "chapter_content" not in chapters[0]

        chapter = client.get(f"/api/novel/{novel_id}/chapters/2").json()
        assert chapter["chapter_content"] == "Nội dung hai."
        assert chapter["chapter_name_normalized"] == "Tiep theo"

    def test_upload_skips_existing_unless_overwrite(self, client):
        """Should keep existing chapters unless asked to overwrite them."""
        novel_id = _create_novel(client)
        client.post(f"/api/novel/{novel_id}/upload", json={"text": "Chương 1: A\nCũ."})

        skipped = client.post(f"/api/novel/{novel_id}/upload", json={"text": "Chương 1: A\nMới."})
        assert skipped.json()["skipped"] == 1
        assert client.get(f"/api/novel/{novel_id}/chapters/1").json()["chapter_content"] == "Cũ."

        updated = client.post(f"/api/novel/{novel_id}/upload",
                              json={"text": "Chương 1: A\nMới.", "overwrite": True})
        assert updated.json()["updated"] == 1
        assert client.get(f"/api/novel/{novel_id}/chapters/1").json()["chapter_content"] == "Mới."

    def test_upload_without_headings(self, client):
        """Should refuse text without chapter headings."""
        novel_id = _create_novel(client)
        response = client.post(f"/api/novel/{novel_id}/upload", json={"text": "no headings"})
        assert response.status_code == 422

    def test_unknown_novel_and_chapter(self, client):
        """Should answer 404 for missing novels and chapters."""
        assert client.get("/api/novel/999/chapters").status_code == 404
        assert client.post("/api/novel/999/upload", json={"text": "Chương 1: A\nB"}).status_code == 404
        novel_id = _create_novel(client)
        assert client.get(f"/api/novel/{novel_id}/chapters/1").status_code == 404

    def test_malformed_json_is_a_client_error(self, client):
        """Should answer 400, not 500, when the body is not a JSON object."""
        novel_id = _create_novel(client)
        headers = {"content-type": "application/json"}

        assert client.post("/api/novels", content=b"{not json", headers=headers).status_code == 400
        assert client.post(f"/api/novel/{novel_id}/upload", content=b"{not json",
                           headers=headers).status_code == 400
        assert client.post("/api/novels", json=["Tiên Nghịch"]).status_code == 400

    def test_overwrite_must_be_json_true(self, client):
        """Should not treat the string "false" as a request to overwrite."""
        novel_id = _create_novel(client)
        client.post(f"/api/novel/{novel_id}/upload", json={"text": "Chương 1: A\nCũ."})

        response = client.post(f"/api/novel/{novel_id}/upload",
                               json={"text": "Chương 1: A\nMới.", "overwrite": "false"})

        assert response.json()["skipped"] == 1
        assert client.get(f"/api/novel/{novel_id}/chapters/1").json()["chapter_content"] == "Cũ."


class TestSilentAudio:
    """The bundled silent MP3."""

    def test_payload_decodes_to_mp3(self):
        """Should decode to non-empty MP3 data with an ID3 tag or frame header."""
        data = tts.SILENT_MP3_BYTES

        assert len(data) > 100
        assert data[:3] == b"ID3" or (data[0] == 0xFF and data[1] & 0xE0 == 0xE0)


class TestProviderSelection:
    """Choosing the synthesis provider from the environment."""

    def test_default_is_silent(self):
        """Should use the silent provider when nothing is configured."""
        assert tts.get_provider({}).name == "silent"

    def test_openai_needs_a_key(self):
        """Should fall back to silence when OpenAI is requested without a key."""
        assert tts.get_provider({"NOVELREADER_TTS_PROVIDER": "openai"}).name == "silent"

    def test_openai_with_key(self):
        """Should configure OpenAI with the key and voice from the environment."""
        provider = tts.get_provider({
            "NOVELREADER_TTS_PROVIDER": "openai",
            "OPENAI_API_KEY": "sk-test",
            "OPENAI_TTS_VOICE": "nova",
        })

        assert isinstance(provider, tts.OpenAITTSProvider)
        assert (provider.api_key, provider.voice) == ("sk-test", "nova")

    @pytest.mark.asyncio
    async def test_silent_audio_length_follows_text(self):
        """Should produce one second of silence per fifteen characters."""
        audio, seconds = await tts.SilentTTSProvider().synthesize("x" * 31)

        assert seconds == 3
        assert audio == tts.SILENT_MP3_BYTES * 3
