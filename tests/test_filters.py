import os

import pytest

from conftest import completed
from session_transcriber.audio import filters
from session_transcriber.audio.analysis import SignalMeasurements, build_analysis
from session_transcriber.audio.filters import (
    Compressor,
    Deesser,
    Denoise,
    FilterChainApplier,
    Gain,
    Highpass,
    LoudnessNorm,
    Lowpass,
    Resample,
    default_filter_chain,
    plan_filter_chain,
)
from session_transcriber.errors import CommandTimeoutError, FilterError


def clean_analysis():
    return build_analysis(
        SignalMeasurements(
            sample_rate=44100,
            bit_rate_kbps=128,
            mean_volume_db=-18.0,
            max_volume_db=-3.0,
            noise_floor_db=-65.0,
            clipping_ratio=0.0,
            silence_ratio=0.1,
            low_frequency_ratio=0.05,
            sibilance_ratio=0.05,
        )
    )


def noisy_quiet_analysis():
    return build_analysis(
        SignalMeasurements(
            sample_rate=44100,
            bit_rate_kbps=128,
            mean_volume_db=-38.0,
            max_volume_db=-6.0,
            loudness_range=9.0,
            noise_floor_db=-42.3,
            clipping_ratio=0.0,
            silence_ratio=0.2,
            low_frequency_ratio=0.3,
            sibilance_ratio=0.2,
        )
    )


def test_clean_audio_gets_base_chain():
    chain = plan_filter_chain(clean_analysis())

    assert chain.kinds() == [
        "Lowpass",
        "Equalizer",
        "Equalizer",
        "Equalizer",
        "Compressor",
        "LoudnessNorm",
        "Resample",
    ]
    assert chain.operations[0] == Lowpass(frequency=10000)
    assert chain.operations[4] == Compressor(threshold_db=-20.0, ratio=4.0)


def test_rules_apply_in_order_for_problem_audio():
    analysis = noisy_quiet_analysis()
    chain = plan_filter_chain(analysis)

    assert chain.kinds() == [
        "Gain",
        "Highpass",
        "Lowpass",
        "Denoise",
        "Equalizer",
        "Equalizer",
        "Equalizer",
        "Deesser",
        "Compressor",
        "LoudnessNorm",
        "Resample",
    ]
    assert chain.operations[0] == Gain(db=18.0)
    assert chain.operations[1] == Highpass(frequency=120)
    assert chain.operations[3] == Denoise(noise_floor_db=-42.0)
    # 32 dB dynamic range
    assert chain.operations[8] == Compressor(threshold_db=-25.0, ratio=6.0)


def test_planner_is_deterministic():
    first = plan_filter_chain(noisy_quiet_analysis())
    second = plan_filter_chain(noisy_quiet_analysis())

    assert first == second
    assert first.render() == second.render()


def test_gain_is_capped():
    analysis = build_analysis(SignalMeasurements(sample_rate=16000, mean_volume_db=-50.0, max_volume_db=-30.0))
    chain = plan_filter_chain(analysis)

    assert chain.operations[0] == Gain(db=20.0)


def test_no_gain_when_clipping():
    analysis = build_analysis(SignalMeasurements(sample_rate=16000, mean_volume_db=-24.0, max_volume_db=0.5))
    chain = plan_filter_chain(analysis)

    assert "Gain" not in chain.kinds()
    compressor = next(op for op in chain.operations if isinstance(op, Compressor))
    assert compressor.threshold_db == -15.0


def test_low_quality_audio_skips_deesser_and_lowers_cutoff():
    analysis = build_analysis(
        SignalMeasurements(sample_rate=8000, bit_rate_kbps=32, mean_volume_db=-18.0, max_volume_db=-3.0, sibilance_ratio=0.3)
    )
    chain = plan_filter_chain(analysis)

    assert Lowpass(frequency=8000) in chain.operations
    assert not any(isinstance(op, Deesser) for op in chain.operations)


def test_render_produces_ffmpeg_filter_string():
    assert Gain(db=18.0).render() == "volume=18dB"
    assert Highpass(frequency=120).render() == "highpass=f=120:poles=2"
    assert Denoise(noise_floor_db=-42.0).render() == "afftdn=nf=-42:nt=w:om=o"
    assert Deesser().render() == "equalizer=f=6500:t=q:w=1:g=-4"
    assert Compressor(-20.0, 4.0).render() == "acompressor=threshold=-20dB:ratio=4:attack=5:release=50:makeup=2"
    assert LoudnessNorm().render() == "loudnorm=I=-16:TP=-1.5:LRA=11"
    assert Resample().render() == "aresample=16000"


def test_default_chain():
    chain = default_filter_chain()

    assert chain.render() == (
        "highpass=f=80:poles=2,lowpass=f=8000:poles=2,"
        "acompressor=threshold=-20dB:ratio=4:attack=5:release=50:makeup=2,"
        "loudnorm=I=-16:TP=-1.5:LRA=11,aresample=16000"
    )
    assert chain.output_format == Resample(16000, 1)


def test_applier_runs_ffmpeg_with_chain(monkeypatch, tmp_path):
    calls = []
    output = tmp_path / "filtered.wav"

    def fake_run(args, timeout, description=None):
        calls.append(args)
        output.write_bytes(b"RIFF")
        return completed(args)

    monkeypatch.setattr(filters, "run_command", fake_run)

    chain = default_filter_chain()
    result = FilterChainApplier("ffmpeg", timeout=10).apply("in.mp3", str(output), chain)

    assert result == str(output)
    args = calls[0]
    assert args[args.index("-af") + 1] == chain.render()
    assert args[args.index("-ar") + 1] == "16000"
    assert args[args.index("-ac") + 1] == "1"


def test_applier_timeout_raises_filter_error(monkeypatch, tmp_path):
    output = tmp_path / "filtered.wav"

    def fake_run(args, timeout, description=None):
        output.write_bytes(b"partial")
        raise CommandTimeoutError("filtered extraction", timeout)

    monkeypatch.setattr(filters, "run_command", fake_run)

    with pytest.raises(FilterError, match="timed out"):
        FilterChainApplier(timeout=1).apply("in.mp3", str(output), default_filter_chain())
    assert not os.path.exists(output)


def test_applier_failure_raises_filter_error(monkeypatch, tmp_path):
    monkeypatch.setattr(
        filters, "run_command", lambda args, timeout, description=None: completed(args, 1, stderr="Invalid argument")
    )

    with pytest.raises(FilterError, match="Invalid argument"):
        FilterChainApplier().apply("in.mp3", str(tmp_path / "out.wav"), default_filter_chain())
