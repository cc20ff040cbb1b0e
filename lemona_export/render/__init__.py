from lemona_export.render.audio_mixer import AudioMixer
from lemona_export.render.classifier import classify
from lemona_export.render.compiler import CompiledProgram, FilterGraphCompiler, OverlaySequence
from lemona_export.render.overlay_renderer import OverlayFrameRenderer
from lemona_export.render.pipeline import RenderPipeline

__all__ = [
    "AudioMixer",
    "CompiledProgram",
    "FilterGraphCompiler",
    "OverlayFrameRenderer",
    "OverlaySequence",
    "RenderPipeline",
    "classify",
]
