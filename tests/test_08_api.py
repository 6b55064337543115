"""
Tests for the HTTP surface.

Tests cover:
- POST /api/tts success: WAV body, effective-parameter headers, attachment name
- Seed reproducibility and server-drawn seeds
- Error mapping: 400 / 503 / 504 / 500 with JSON bodies
- GET /api/health, GET /api/debug counters, GET /metrics
- Startup: MODEL_NOT_READY before the lifespan ran, DeviceInitError is fatal
"""
import io
import threading

import pytest
import soundfile as sf
from fastapi.testclient import TestClient

from helpers import FakeEngine, FakeProbe, wait_until_sync

FORM = {"text": "Hey, how are you doing today?", "description": "A female speaker with a calm voice."}


def _app(engine=None, probe=None, **sections):
    from parler_serve.core.config import Settings
    from parler_serve.core.metrics import ServiceMetrics
    from parler_serve.main import create_app

    raw = {"audio": {"chunk_bytes": 1024}}
    raw.update(sections)
    return create_app(
        settings=Settings(raw=raw),
        engine=engine or FakeEngine(),
        probe=probe or FakeProbe(),
        metrics=ServiceMetrics(),
        seed_source=lambda: 12345,
    )


class TestGenerate:
    """POST /api/tts happy path."""

    def test_returns_wav(self):
        with TestClient(_app(FakeEngine(sample_rate=24000, frames=2400))) as client:
            r = client.post("/api/tts", data=FORM)

        assert r.status_code == 200
        assert r.headers["content-type"] == "audio/wav"
        assert r.content[:4] == b"RIFF"

        samples, sr = sf.read(io.BytesIO(r.content))
        assert sr == 24000
        assert len(samples) == 2400

    def test_effective_parameter_headers(self):
        """Seed, temperature and top_p actually used are echoed back."""
        with TestClient(_app()) as client:
            r = client.post("/api/tts", data={**FORM, "seed": "42", "temperature": "0.7", "top_p": "0.9"})

        assert r.status_code == 200
        assert r.headers["x-seed"] == "42"
        assert r.headers["x-temperature"] == "0.7"
        assert r.headers["x-top-p"] == "0.9"
        assert r.headers["x-sample-rate"] == "16000"
        assert len(r.headers["x-request-id"]) == 12
        assert "x-clamped" not in r.headers

    def test_attachment_filename(self):
        with TestClient(_app()) as client:
            r = client.post("/api/tts", data=FORM)

        disposition = r.headers["content-disposition"]
        assert disposition.startswith('attachment; filename="generated_audio_')
        assert disposition.endswith('.wav"')

    def test_server_drawn_seed_reported(self):
        """Without a seed the server draws one and reports it."""
        with TestClient(_app()) as client:
            r = client.post("/api/tts", data=FORM)
        assert r.headers["x-seed"] == "12345"

    def test_same_seed_same_audio(self):
        """Resending the reported seed reproduces the audio byte for byte."""
        with TestClient(_app()) as client:
            first = client.post("/api/tts", data=FORM)
            again = client.post("/api/tts", data={**FORM, "seed": first.headers["x-seed"]})
            other = client.post("/api/tts", data={**FORM, "seed": "777"})

        assert first.content == again.content
        assert first.content != other.content

    def test_clamped_values_reported(self):
        with TestClient(_app()) as client:
            r = client.post("/api/tts", data={**FORM, "temperature": "5", "top_p": "0"})

        assert r.status_code == 200
        assert r.headers["x-temperature"] == "2"
        assert r.headers["x-top-p"] == "0.01"
        assert r.headers["x-clamped"] == "temperature,top_p"

    def test_empty_optional_fields(self):
        """Untouched form inputs arrive as empty strings and mean 'default'."""
        with TestClient(_app()) as client:
            r = client.post("/api/tts", data={**FORM, "temperature": "", "top_p": "", "seed": ""})
        assert r.status_code == 200
        assert r.headers["x-temperature"] == "1"


class TestErrors:
    """Error mapping and JSON bodies."""

    def test_missing_text(self):
        with TestClient(_app()) as client:
            r = client.post("/api/tts", data={"description": FORM["description"]})

        assert r.status_code == 400
        body = r.json()
        assert body["ok"] is False
        assert body["error"] == "INVALID_PARAMETER"
        assert body["field"] == "text"
        assert len(body["request_id"]) == 12

    def test_text_too_long(self):
        with TestClient(_app(generation={"max_text_chars": 10})) as client:
            r = client.post("/api/tts", data={**FORM, "text": "x" * 11})
        assert r.status_code == 400
        assert r.json()["error"] == "TEXT_TOO_LONG"

    @pytest.mark.parametrize("field,value", [("temperature", "hot"), ("top_p", "nan"), ("seed", "-3")])
    def test_bad_number(self, field, value):
        engine = FakeEngine()
        with TestClient(_app(engine)) as client:
            r = client.post("/api/tts", data={**FORM, field: value})

        assert r.status_code == 400
        assert r.json()["field"] == field
        assert engine.calls == []

    def test_engine_failure_is_opaque(self):
        """500 bodies do not leak backend details."""
        with TestClient(_app()) as client:
            r = client.post("/api/tts", data={**FORM, "text": "this will fail"})

        assert r.status_code == 500
        body = r.json()
        assert body["error"] == "ENGINE_FAILURE"
        assert "exploded" not in body["message"]
        assert "details" not in body

    def test_encoding_failure_is_500(self):
        """Corrupt audio fails before any WAV byte is sent and is counted as failed."""
        with TestClient(_app()) as client:
            r = client.post("/api/tts", data={**FORM, "text": "corrupt output"})
            debug = client.get("/api/debug").json()

        assert r.status_code == 500
        assert r.headers["content-type"].startswith("application/json")
        body = r.json()
        assert body["error"] == "ENCODING_FAILURE"
        assert "NaN" not in body["message"]
        assert debug["scheduler"]["failed"] == 1
        assert debug["scheduler"]["completed"] == 0

    def test_timeout(self):
        with TestClient(_app(scheduler={"job_timeout_s": 0.3})) as client:
            r = client.post("/api/tts", data={**FORM, "text": "block forever"})
            assert r.status_code == 504
            assert r.json()["error"] == "TIMEOUT"

            # the resource is free again afterwards
            ok = client.post("/api/tts", data=FORM)
            assert ok.status_code == 200

    def test_queue_full(self):
        """With max_queue=0 a second request while one runs is rejected immediately."""
        engine = FakeEngine()
        with TestClient(_app(engine, scheduler={"max_queue": 0})) as client:
            results = {}

            def first():
                results["first"] = client.post("/api/tts", data={**FORM, "text": "block please"})

            t = threading.Thread(target=first)
            t.start()
            try:
                wait_until_sync(lambda: engine.active == 1)
                r = client.post("/api/tts", data=FORM)
                assert r.status_code == 503
                assert r.json()["error"] == "QUEUE_FULL"
            finally:
                engine.gate.set()
                t.join(timeout=10)

            assert results["first"].status_code == 200
            assert engine.calls == ["block please"]


class TestHealthAndDebug:
    def test_health(self):
        with TestClient(_app()) as client:
            r = client.get("/api/health")

        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is True
        assert body["status"] == "ready"
        assert body["engine"] == "fake"
        assert body["loaded"] is True
        assert body["sample_rate"] == 16000
        assert body["device"] == {"kind": "cpu-generic", "forced": False, "torch_device": "cpu"}

    def test_health_reports_forced_cpu(self):
        from parler_serve.core.device import DeviceKind

        probe = FakeProbe(available=[DeviceKind.GPU_CUDA, DeviceKind.CPU_MKL])
        with TestClient(_app(probe=probe, device={"force_cpu": True})) as client:
            device = client.get("/api/health").json()["device"]
        assert device["kind"] == "cpu-mkl"
        assert device["forced"] is True

    def test_debug_counters(self):
        with TestClient(_app(scheduler={"max_queue": 4})) as client:
            for seed in ("1", "2", "3"):
                assert client.post("/api/tts", data={**FORM, "seed": seed}).status_code == 200
            assert client.post("/api/tts", data={**FORM, "text": "fail"}).status_code == 500
            r = client.get("/api/debug")

        assert r.status_code == 200
        body = r.json()
        sched = body["scheduler"]
        assert sched["queue_depth"] == 0
        assert sched["capacity"] == 4
        assert sched["state"] == "idle"
        assert sched["running"] is False
        assert sched["completed"] == 3
        assert sched["failed"] == 1
        assert sched["timed_out"] == 0
        assert sched["cancelled"] == 0
        assert body["resources"]["ram_used_mb"] > 0
        assert body["device"]["kind"] == "cpu-generic"

    def test_metrics(self):
        with TestClient(_app()) as client:
            client.post("/api/tts", data=FORM)
            r = client.get("/metrics")

        assert r.status_code == 200
        assert 'parler_jobs_total{outcome="completed"} 1.0' in r.text
        assert 'parler_model_loaded{engine="fake",device="cpu-generic"} 1.0' in r.text
        assert "parler_audio_bytes_total" in r.text


class TestStartup:
    def test_not_ready_without_lifespan(self):
        """Requests before startup finished get 503 MODEL_NOT_READY."""
        client = TestClient(_app())

        r = client.get("/api/health")
        assert r.status_code == 503
        assert r.json()["error"] == "MODEL_NOT_READY"

        r = client.post("/api/tts", data=FORM)
        assert r.status_code == 503

    def test_metrics_available_before_startup(self):
        client = TestClient(_app())
        assert client.get("/metrics").status_code == 200

    def test_device_init_failure_is_fatal(self):
        from parler_serve.core.errors import DeviceInitError

        engine = FakeEngine()
        with pytest.raises(DeviceInitError):
            with TestClient(_app(engine, probe=FakeProbe(fail_init=True))):
                pass
        assert engine.load_count == 0

    def test_shutdown_unloads_service(self):
        app = _app()
        with TestClient(app) as client:
            assert client.get("/api/health").status_code == 200
        assert app.state.speech_service is None
