"""
The artifact tables compiled into the client: whisper.cpp speech models and
small GGUF language models suitable for on-device use.
"""

from model_depot.models.artifact import ArtifactDescriptor

from .registry import ArtifactCatalog, FamilySpec

SPEECH_FAMILY = FamilySpec(
    name="speech",
    directory="models",
    record_filename="models_metadata.json",
    metered_threshold_mb=100,
)
LANGUAGE_FAMILY = FamilySpec(
    name="language",
    directory="llama_models",
    record_filename="llama_models_metadata.json",
    metered_threshold_mb=300,
)

_WHISPER_BASE_URL = "https://huggingface.co/ggerganov/whisper.cpp/resolve/main"

SPEECH_MODELS = (
    ArtifactDescriptor(
        key="tiny",
        display_name="Tiny (English)",
        remote_url=f"{_WHISPER_BASE_URL}/ggml-tiny.en.bin",
        destination_filename="ggml-tiny.en.bin",
        expected_size_mb=75,
        description="Fast but less accurate. Good for short commands and phrases.",
        family=SPEECH_FAMILY.name,
        languages=("English",),
    ),
    ArtifactDescriptor(
        key="base",
        display_name="Base (English)",
        remote_url=f"{_WHISPER_BASE_URL}/ggml-base.en.bin",
        destination_filename="ggml-base.en.bin",
        expected_size_mb=142,
        description="Better accuracy than tiny, still relatively fast.",
        family=SPEECH_FAMILY.name,
        languages=("English",),
    ),
    ArtifactDescriptor(
        key="medium",
        display_name="Medium (Multilingual)",
        remote_url=f"{_WHISPER_BASE_URL}/ggml-medium.bin",
        destination_filename="ggml-medium.bin",
        expected_size_mb=1500,
        description="High accuracy with multiple language support.",
        family=SPEECH_FAMILY.name,
        languages=("Multiple languages including Arabic, Yoruba, etc.",),
    ),
)

LANGUAGE_MODELS = (
    ArtifactDescriptor(
        key="llama-3.2-1b",
        display_name="Llama 3.2 1B (Instruct)",
        remote_url=(
            "https://huggingface.co/bartowski/Llama-3.2-1B-Instruct-GGUF/resolve/main/"
            "Llama-3.2-1B-Instruct-Q4_K_M.gguf"
        ),
        destination_filename="llama-3.2-1b-instruct-q4_k_m.gguf",
        expected_size_mb=700,
        description=(
            "Lightweight Llama model for text generation and analysis. "
            "Perfect for naming and summarization."
        ),
        family=LANGUAGE_FAMILY.name,
        context_size=8192,
    ),
    ArtifactDescriptor(
        key="qwen2.5-0.5b",
        display_name="Qwen2.5 0.5B (Instruct)",
        remote_url=(
            "https://huggingface.co/Qwen/Qwen2.5-0.5B-Instruct-GGUF/resolve/main/"
            "qwen2.5-0.5b-instruct-q4_k_m.gguf"
        ),
        destination_filename="qwen2.5-0.5b-instruct-q4_k_m.gguf",
        expected_size_mb=400,
        description="Ultra-lightweight model for quick AI tasks. Fast and efficient.",
        family=LANGUAGE_FAMILY.name,
        context_size=32768,
    ),
)


def builtin_catalogs() -> dict[str, ArtifactCatalog]:
    """Returns the compiled-in catalogs keyed by family name."""
    return {
        SPEECH_FAMILY.name: ArtifactCatalog(SPEECH_FAMILY, SPEECH_MODELS),
        LANGUAGE_FAMILY.name: ArtifactCatalog(LANGUAGE_FAMILY, LANGUAGE_MODELS),
    }
