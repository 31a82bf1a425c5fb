from voice_relay.speech import Voice, VoiceCatalog, pick_voice

VOICES = [
    Voice("Google UK English Male", "en-GB"),
    Voice("Google US English Female", "en-US"),
    Voice("Microsoft Heera - English (India)", "en-IN"),
    Voice("Lekha Hindi", ""),
    Voice("Google தமிழ் Female", "ta"),
]


def test_exact_tag_match():
    assert pick_voice(VOICES, "en-IN").name == "Microsoft Heera - English (India)"


def test_prefix_match_prefers_female():
    assert pick_voice(VOICES, "en-AU").name == "Google US English Female"
    assert pick_voice(VOICES, "ta-IN").lang == "ta"


def test_name_hint_when_tags_do_not_match():
    assert pick_voice(VOICES, "hi-IN").name == "Lekha Hindi"


def test_falls_back_to_english_then_first():
    assert pick_voice(VOICES, "pa-IN").lang.startswith("en")
    only_french = [Voice("Amelie", "fr-CA")]
    assert pick_voice(only_french, "pa-IN") == only_french[0]
    assert pick_voice([], "en-US") is None


class LateSynth:
    def __init__(self, ready_after: int) -> None:
        self.calls = 0
        self.ready_after = ready_after

    def voices(self):
        self.calls += 1
        return [Voice("Late Voice", "en-US")] if self.calls > self.ready_after else []


async def test_wait_ready_polls_until_voices_appear():
    synth = LateSynth(ready_after=2)
    catalog = VoiceCatalog(synth)

    voices = await catalog.wait_ready(attempts=5, interval=0.001)

    assert [v.name for v in voices] == ["Late Voice"]
    assert catalog.ready
    assert synth.calls == 3


async def test_wait_ready_gives_up_after_bounded_attempts():
    synth = LateSynth(ready_after=100)
    voices = await VoiceCatalog(synth).wait_ready(attempts=3, interval=0.001)

    assert voices == []
    assert synth.calls == 4
