"""
Filter graph compiler for timeline export.

Turns the native (non-overlay) timeline elements into one ffmpeg compositing
program:

1. Input mapping: one numbered input per unique source, then the synthetic
   black background, then the optional overlay frame sequence
2. Per-element chains: trim, speed, image looping, fit-and-pad, opacity,
   transitions, placement on the absolute timeline
3. Track assembly: sequential concatenation within a track, tracks layered
   on the background in increasing index order
4. Overlay frames composited last
5. Audio assembly (see audio_mixer)

The compiler never mutates the timeline and never runs ffmpeg; it returns a
CompiledProgram that the render pipeline turns into a command line.
"""

import logging
import os
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from lemona_export.render.audio_mixer import AudioClipData, AudioMixer, AudioTrackData
from lemona_export.render.filter_graph import (
    Filter,
    FilterGraph,
    InputSource,
    format_number,
    format_seconds,
)
from lemona_export.schemas.export import ExportSettings
from lemona_export.schemas.timeline import (
    AUDIO_CAPABLE_KINDS,
    VISUAL_MEDIA_KINDS,
    TimelineElement,
    Track,
    Transition,
)

logger = logging.getLogger(__name__)

VIDEO_OUTPUT_LABEL = "vout"
OVERLAY_FRAME_PATTERN = "frame_%06d.png"

# Zoom transitions settle from this zoompan factor down to 1.0
ZOOM_START_FACTOR = 1.5


@dataclass
class OverlaySequence:
    """A rendered directory of transparent frames at a fixed frame rate."""

    directory: str
    frame_count: int
    fps: int
    pattern: str = OVERLAY_FRAME_PATTERN

    @property
    def path_pattern(self) -> str:
        return os.path.join(self.directory, self.pattern)

    @property
    def duration_ms(self) -> float:
        return self.frame_count * 1000 / self.fps


@dataclass
class CompiledProgram:
    """Everything the engine needs to run one export."""

    inputs: list[InputSource]
    graph: FilterGraph
    duration_ms: float
    background_index: int
    overlay_index: int | None = None
    video_label: str = VIDEO_OUTPUT_LABEL
    audio_label: str = "aout"
    source_indexes: dict[str, int] = field(default_factory=dict)

    @property
    def filter_complex(self) -> str:
        return self.graph.serialize()


def output_duration_ms(elements: Iterable[TimelineElement]) -> float:
    """Export duration: the latest element end on the timeline."""
    return max((element.timeline_end_ms for element in elements), default=0.0)


class FilterGraphCompiler:
    """Compiles media elements and an optional overlay into a CompiledProgram."""

    def __init__(self, settings: ExportSettings, sample_rate: int = 48000):
        self.settings = settings
        self.width, self.height = settings.size
        self.fps = settings.fps
        self.audio_mixer = AudioMixer(sample_rate=sample_rate)

    def compile(
        self,
        elements: Sequence[TimelineElement],
        tracks: Sequence[Track],
        overlay: OverlaySequence | None = None,
        duration_ms: float | None = None,
        audio_sources: Mapping[str, bool] | None = None,
    ) -> CompiledProgram:
        """Build the compositing program.

        Args:
            elements: Media elements with resolved local source paths
            tracks: Track list of the timeline
            overlay: Rendered overlay frames, if any styled elements exist
            duration_ms: Output duration; defaults to the latest element end
            audio_sources: Source path -> whether it carries an audio stream.
                Paths missing from the map are assumed to carry audio.

        Returns:
            CompiledProgram with inputs, graph and output labels
        """
        if duration_ms is None:
            duration_ms = output_duration_ms(elements)
            if overlay is not None:
                duration_ms = max(duration_ms, overlay.duration_ms)
        if duration_ms <= 0:
            raise ValueError("output duration must be positive")

        audio_sources = audio_sources or {}
        graph = FilterGraph()

        # 1. Input mapping
        inputs: list[InputSource] = []
        source_indexes: dict[str, int] = {}
        for element in elements:
            path = element.asset_source
            if path is None or path in source_indexes:
                continue
            source_indexes[path] = len(inputs)
            inputs.append(InputSource.file(path))

        background_index = len(inputs)
        inputs.append(
            InputSource.lavfi(
                f"color=c=black:s={self.width}x{self.height}:r={self.fps}:d={format_seconds(duration_ms)}"
            )
        )

        overlay_index: int | None = None
        if overlay is not None:
            overlay_index = len(inputs)
            inputs.append(InputSource.image_sequence(overlay.path_pattern, overlay.fps))

        # 2-3. Per-element chains and track assembly
        track_order = self._ordered_tracks(tracks)
        visual_by_track: dict[str, list[TimelineElement]] = defaultdict(list)
        for element in elements:
            if element.kind in VISUAL_MEDIA_KINDS:
                visual_by_track[element.track_id].append(element)

        graph.add([f"{background_index}:v"], [Filter("setsar", 1)], ["base"])
        current = "base"
        for track_id in track_order:
            clips = visual_by_track.get(track_id)
            if not clips:
                continue
            track_label = self._assemble_track(graph, clips, source_indexes)
            layered = graph.new_label("layer")
            graph.add(
                [current, track_label],
                [Filter("overlay", x=0, y=0, eof_action="pass", format="auto")],
                [layered],
            )
            current = layered

        # 5. Overlay frames on top of everything native
        if overlay_index is not None:
            layered = graph.new_label("layer")
            graph.add(
                [current, f"{overlay_index}:v"],
                [Filter("overlay", x=0, y=0, eof_action="pass", format="auto")],
                [layered],
            )
            current = layered

        # 7. Finalize video
        graph.producer_of(current).filters.append(Filter("format", "yuv420p"))
        graph.relabel(current, VIDEO_OUTPUT_LABEL)

        # 6. Audio
        audio_tracks = self._audio_tracks(elements, track_order, source_indexes, audio_sources)
        audio_label = self.audio_mixer.build(graph, audio_tracks, duration_ms)

        graph.validate(len(inputs), [VIDEO_OUTPUT_LABEL, audio_label])

        logger.info(
            f"[COMPILE] {len(elements)} media elements, {len(source_indexes)} sources, "
            f"{len(graph)} chains, overlay={'yes' if overlay else 'no'}, duration={duration_ms:g}ms"
        )
        return CompiledProgram(
            inputs=inputs,
            graph=graph,
            duration_ms=duration_ms,
            background_index=background_index,
            overlay_index=overlay_index,
            audio_label=audio_label,
            source_indexes=source_indexes,
        )

    # =========================================================================
    # Video
    # =========================================================================

    def _ordered_tracks(self, tracks: Sequence[Track]) -> list[str]:
        # Stable: equal indexes keep list order
        return [track.id for track in sorted(tracks, key=lambda t: t.index)]

    def _assemble_track(
        self,
        graph: FilterGraph,
        clips: list[TimelineElement],
        source_indexes: Mapping[str, int],
    ) -> str:
        """Concatenate one track's clips into a stream that starts at t=0."""
        segments: list[str] = []
        previous_end = 0.0
        for element in sorted(clips, key=lambda e: e.timeline_start_ms):
            gap_ms = element.timeline_start_ms - previous_end
            segments.append(self._build_segment(graph, element, source_indexes, gap_ms))
            previous_end = element.timeline_end_ms

        if len(segments) == 1:
            return segments[0]

        label = graph.new_label("track")
        graph.add(segments, [Filter("concat", n=len(segments), v=1, a=0)], [label])
        return label

    def _build_segment(
        self,
        graph: FilterGraph,
        element: TimelineElement,
        source_indexes: Mapping[str, int],
        gap_ms: float,
    ) -> str:
        input_index = source_indexes[element.asset_source]
        duration = format_seconds(element.duration_ms)
        filters: list[Filter] = []

        if element.kind == "image":
            filters += [
                Filter("loop", loop=-1, size=1, start=0),
                Filter("setpts", f"N/({self.fps}*TB)"),
            ]
        else:
            source_start, source_end = element.source_range_ms()
            filters.append(Filter("trim", start=format_seconds(source_start), end=format_seconds(source_end)))
            if element.speed == 1.0:
                filters.append(Filter("setpts", "PTS-STARTPTS"))
            else:
                filters.append(Filter("setpts", f"(PTS-STARTPTS)/{format_number(element.speed)}"))

        filters.append(Filter("fps", self.fps))
        filters += self._fit_filters(element)
        filters.append(Filter("format", "yuva420p"))

        if element.opacity != 1.0:
            filters += [
                Filter("format", "rgba"),
                Filter("colorchannelmixer", aa=element.opacity),
                Filter("format", "yuva420p"),
            ]

        filters += self._transition_filters(element)

        filters += [
            Filter("trim", duration=duration),
            Filter("setpts", "PTS-STARTPTS"),
        ]

        # Transparent lead-in places the clip at its absolute timeline position
        if gap_ms > 0:
            filters.append(Filter("tpad", start_duration=format_seconds(gap_ms), color="black@0"))

        label = graph.new_label("seg")
        graph.add([f"{input_index}:v"], filters, [label])
        return label

    def _fit_filters(self, element: TimelineElement) -> list[Filter]:
        """Scale into the frame (or a scaled box), then pad to the output size."""
        props = element.properties
        box_w = max(2, round(self.width * props.scale))
        box_h = max(2, round(self.height * props.scale))

        filters = [
            Filter(
                "scale",
                w=box_w,
                h=box_h,
                force_original_aspect_ratio="decrease",
                force_divisible_by=2,
            )
        ]
        if props.scale > 1:
            filters.append(Filter("crop", w=f"min(iw,{self.width})", h=f"min(ih,{self.height})"))

        if props.position is None or (props.position.x == 0 and props.position.y == 0):
            x, y = "(ow-iw)/2", "(oh-ih)/2"
        else:
            px = format_number(props.position.x)
            py = format_number(props.position.y)
            x = f"max(0,min(ow-iw,(ow-iw)/2+{px}))"
            y = f"max(0,min(oh-ih,(oh-ih)/2+{py}))"

        filters += [
            Filter("pad", self.width, self.height, x, y, color="black"),
            Filter("setsar", 1),
        ]
        return filters

    def _transition_filters(self, element: TimelineElement) -> list[Filter]:
        """Time-windowed filters for transitionIn/transitionOut.

        Times are local to the clip: t=0 is the clip's first timeline frame.
        """
        t_in, t_out = element.transition_in, element.transition_out
        d_in = element.transition_ms(t_in)
        d_out = element.transition_ms(t_out)
        total = element.duration_ms
        filters: list[Filter] = []

        def active(transition: Transition | None, length: float, *kinds: str) -> bool:
            return transition is not None and length > 0 and transition.kind in kinds

        in_s, out_s = format_seconds(d_in), format_seconds(d_out)
        out_start = format_seconds(total - d_out)

        # Fade through black / dissolve through alpha
        for transition, length, direction, start in ((t_in, in_s, "in", "0"), (t_out, out_s, "out", out_start)):
            if active(transition, element.transition_ms(transition), "fade"):
                filters.append(Filter("fade", t=direction, st=start, d=length))
            elif active(transition, element.transition_ms(transition), "dissolve", "zoom"):
                filters.append(Filter("fade", t=direction, st=start, d=length, alpha=1))

        if active(t_in, d_in, "zoom") or active(t_out, d_out, "zoom"):
            filters.append(self._zoom_filter(t_in, d_in, t_out, d_out, total))

        if active(t_in, d_in, "slide") or active(t_out, d_out, "slide"):
            filters += self._slide_filters(t_in, d_in, t_out, d_out, total)

        masks = []
        if active(t_in, d_in, "wipe"):
            masks.append(f"lte(X,W*min(1,T/{in_s}))")
        if active(t_out, d_out, "wipe"):
            masks.append(f"lte(X,W*(1-max(0,(T-{out_start})/{out_s})))")
        if active(t_in, d_in, "iris"):
            masks.append(f"lte(hypot(X-W/2,Y-H/2),hypot(W,H)/2*min(1,T/{in_s}))")
        if active(t_out, d_out, "iris"):
            masks.append(f"lte(hypot(X-W/2,Y-H/2),hypot(W,H)/2*(1-max(0,(T-{out_start})/{out_s})))")
        if masks:
            filters.append(
                Filter(
                    "geq",
                    lum="lum(X,Y)",
                    cb="cb(X,Y)",
                    cr="cr(X,Y)",
                    a="*".join(["alpha(X,Y)", *masks]),
                )
            )
        return filters

    def _zoom_filter(
        self,
        t_in: Transition | None,
        d_in: float,
        t_out: Transition | None,
        d_out: float,
        total: float,
    ) -> Filter:
        extra = format_number(ZOOM_START_FACTOR - 1)
        z_in = z_out = None
        if t_in is not None and t_in.kind == "zoom" and d_in > 0:
            z_in = (format_seconds(d_in), f"{format_number(ZOOM_START_FACTOR)}-{extra}*it/{format_seconds(d_in)}")
        if t_out is not None and t_out.kind == "zoom" and d_out > 0:
            start = format_seconds(total - d_out)
            z_out = (start, f"1+{extra}*(it-{start})/{format_seconds(d_out)}")

        expr = "1"
        if z_out is not None:
            expr = f"if(gt(it,{z_out[0]}),{z_out[1]},{expr})"
        if z_in is not None:
            expr = f"if(lt(it,{z_in[0]}),{z_in[1]},{expr})"

        return Filter(
            "zoompan",
            z=expr,
            x="iw/2-(iw/zoom/2)",
            y="ih/2-(ih/zoom/2)",
            d=1,
            s=f"{self.width}x{self.height}",
            fps=self.fps,
        )

    def _slide_filters(
        self,
        t_in: Transition | None,
        d_in: float,
        t_out: Transition | None,
        d_out: float,
        total: float,
    ) -> list[Filter]:
        # Content sits in the middle third of a 3x wide transparent strip;
        # a frame-sized crop window scrolls across it.
        w = self.width
        expr = str(w)
        if t_out is not None and t_out.kind == "slide" and d_out > 0:
            start = format_seconds(total - d_out)
            expr = f"if(gt(t,{start}),{w}+{w}*(t-{start})/{format_seconds(d_out)},{expr})"
        if t_in is not None and t_in.kind == "slide" and d_in > 0:
            expr = f"if(lt(t,{format_seconds(d_in)}),{w}*t/{format_seconds(d_in)},{expr})"

        return [
            Filter("pad", 3 * w, self.height, w, 0, color="black@0"),
            Filter("crop", w=w, h=self.height, x=expr, y=0),
        ]

    # =========================================================================
    # Audio
    # =========================================================================

    def _audio_tracks(
        self,
        elements: Sequence[TimelineElement],
        track_order: list[str],
        source_indexes: Mapping[str, int],
        audio_sources: Mapping[str, bool],
    ) -> list[AudioTrackData]:
        by_track: dict[str, AudioTrackData] = {}
        for element in elements:
            if element.kind not in AUDIO_CAPABLE_KINDS:
                continue
            path = element.asset_source
            if not audio_sources.get(path, True):
                continue

            source_start, source_end = element.source_range_ms()
            fade_in = element.transition_ms(element.transition_in)
            fade_out = element.transition_ms(element.transition_out)
            clip = AudioClipData(
                element_id=element.id,
                input_label=f"{source_indexes[path]}:a",
                source_start_ms=source_start,
                source_end_ms=source_end,
                timeline_start_ms=element.timeline_start_ms,
                duration_ms=element.duration_ms,
                speed=element.speed,
                volume=element.volume,
                fade_in_ms=fade_in,
                fade_out_ms=fade_out,
            )
            by_track.setdefault(element.track_id, AudioTrackData(track_id=element.track_id)).clips.append(clip)

        ordered = [by_track[track_id] for track_id in track_order if track_id in by_track]
        # Elements on tracks missing from the list still get mixed
        ordered += [data for track_id, data in by_track.items() if track_id not in track_order]
        return ordered
