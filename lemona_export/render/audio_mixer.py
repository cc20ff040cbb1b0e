"""
Audio assembly for the export filter graph.

This module handles:
- Per-clip trim, tempo change, volume and fades
- Placement on the absolute timeline (adelay)
- Mixing clips that share a track, then mixing tracks together
- Synthesized silence when nothing on the timeline carries audio

Every path ends in one stream labeled "aout" that lasts exactly the output
duration, so the muxed file always has a continuous audio channel.
"""

from dataclasses import dataclass, field

from lemona_export.render.filter_graph import Filter, FilterGraph, format_seconds

# atempo accepts factors in [0.5, 2.0]; larger changes are chained stages
ATEMPO_MIN = 0.5
ATEMPO_MAX = 2.0
MAX_ATEMPO_STAGES = 4
MIN_SPEED = ATEMPO_MIN**MAX_ATEMPO_STAGES
MAX_SPEED = ATEMPO_MAX**MAX_ATEMPO_STAGES

AUDIO_OUTPUT_LABEL = "aout"


def atempo_chain(speed: float) -> list[float]:
    """Split a speed factor into atempo stages whose product equals speed.

    Raises:
        ValueError: If more than MAX_ATEMPO_STAGES stages would be needed
    """
    if speed <= 0:
        raise ValueError(f"speed must be positive, got {speed}")

    stages: list[float] = []
    remaining = speed
    while remaining > ATEMPO_MAX:
        stages.append(ATEMPO_MAX)
        remaining /= ATEMPO_MAX
    while remaining < ATEMPO_MIN:
        stages.append(ATEMPO_MIN)
        remaining /= ATEMPO_MIN
    if abs(remaining - 1.0) > 1e-9:
        stages.append(remaining)

    if len(stages) > MAX_ATEMPO_STAGES:
        raise ValueError(f"speed {speed} needs {len(stages)} atempo stages (max {MAX_ATEMPO_STAGES})")
    return stages


@dataclass
class AudioClipData:
    """One audio contributor, already mapped to an ffmpeg input stream."""

    element_id: str
    input_label: str  # e.g. "2:a"
    source_start_ms: float
    source_end_ms: float
    timeline_start_ms: float
    duration_ms: float
    speed: float = 1.0
    volume: float = 1.0
    fade_in_ms: float = 0
    fade_out_ms: float = 0


@dataclass
class AudioTrackData:
    """Audio contributors sharing one timeline track."""

    track_id: str
    clips: list[AudioClipData] = field(default_factory=list)


class AudioMixer:
    """Builds the audio half of a filter graph."""

    def __init__(self, sample_rate: int = 48000):
        self.sample_rate = sample_rate

    def build(self, graph: FilterGraph, tracks: list[AudioTrackData], duration_ms: float) -> str:
        """Add audio chains to the graph.

        A single contributor is padded and trimmed to the output duration.
        Anything mixed is laid over a full-length silent bed with
        amix duration=first. apad must never follow amix: the padded frames
        lose their timestamps and the trailing atrim never ends.

        Args:
            graph: Graph to extend
            tracks: Audio contributors grouped by track
            duration_ms: Output duration

        Returns:
            The final audio label
        """
        track_labels: list[str] = []
        contributors = 0
        for track in tracks:
            clip_labels = [self._build_clip(graph, clip) for clip in track.clips]
            if not clip_labels:
                continue
            contributors += len(clip_labels)
            track_labels.append(self._mix(graph, clip_labels, "amt"))

        if not track_labels:
            graph.add([], self._silence(duration_ms), [AUDIO_OUTPUT_LABEL])
            return AUDIO_OUTPUT_LABEL

        if contributors == 1:
            # Single contributor: extend its chain and relabel, no mixer
            final = track_labels[0]
            graph.producer_of(final).filters.extend(
                [
                    Filter("apad"),
                    Filter("atrim", duration=format_seconds(duration_ms)),
                ]
            )
            graph.relabel(final, AUDIO_OUTPUT_LABEL)
            return AUDIO_OUTPUT_LABEL

        bed = graph.new_label("abed")
        graph.add([], self._silence(duration_ms), [bed])
        inputs = [bed] + track_labels
        graph.add(
            inputs,
            [Filter("amix", inputs=len(inputs), duration="first", dropout_transition=0, normalize=0)],
            [AUDIO_OUTPUT_LABEL],
        )
        return AUDIO_OUTPUT_LABEL

    def _silence(self, duration_ms: float) -> list[Filter]:
        return [
            Filter("anullsrc", channel_layout="stereo", sample_rate=self.sample_rate),
            Filter("atrim", duration=format_seconds(duration_ms)),
        ]

    def _build_clip(self, graph: FilterGraph, clip: AudioClipData) -> str:
        filters = [
            Filter("aformat", sample_rates=self.sample_rate, channel_layouts="stereo"),
            Filter(
                "atrim",
                start=format_seconds(clip.source_start_ms),
                end=format_seconds(clip.source_end_ms),
            ),
            Filter("asetpts", "PTS-STARTPTS"),
        ]

        for stage in atempo_chain(clip.speed):
            filters.append(Filter("atempo", stage))

        # Pin the stretched clip to its exact timeline length
        filters.append(Filter("atrim", duration=format_seconds(clip.duration_ms)))

        # volume=0 is kept so the clip contributes silence
        if clip.volume != 1.0:
            filters.append(Filter("volume", clip.volume))

        if clip.fade_in_ms > 0:
            filters.append(Filter("afade", t="in", st="0", d=format_seconds(clip.fade_in_ms)))
        if clip.fade_out_ms > 0:
            filters.append(
                Filter(
                    "afade",
                    t="out",
                    st=format_seconds(clip.duration_ms - clip.fade_out_ms),
                    d=format_seconds(clip.fade_out_ms),
                )
            )

        if clip.timeline_start_ms > 0:
            delay_samples = round(clip.timeline_start_ms * self.sample_rate / 1000)
            filters.append(Filter("adelay", f"{delay_samples}S", all=1))

        label = graph.new_label("ac")
        graph.add([clip.input_label], filters, [label])
        return label

    def _mix(self, graph: FilterGraph, labels: list[str], prefix: str) -> str:
        if len(labels) == 1:
            return labels[0]
        label = graph.new_label(prefix)
        graph.add(
            labels,
            [Filter("amix", inputs=len(labels), duration="longest", dropout_transition=0, normalize=0)],
            [label],
        )
        return label
