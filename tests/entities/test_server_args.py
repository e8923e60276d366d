import pytest
from pydantic import ValidationError

from llama_lifecycle.entities.resource_plan import ResourcePlan
from llama_lifecycle.entities.server_args import DEFAULT_MODEL_URL, ServerArgs, model_name_from_source


def _plan(**overrides):
    data = dict(
        gpu_layers=10, ctx_size=2048, threads=4, threads_batch=8, device="gpu",
        budget_bytes=100, headroom_bytes=10, projected_bytes=50,
    )
    data.update(overrides)
    return ResourcePlan(**data)


class TestModelName:
    """Model names derived from the three model sources."""

    def test_local_path(self):
        """A local path yields its lowercase stem."""
        assert model_name_from_source(model="/models/Llama-3-8B.Q4_K_M.gguf") == "llama-3-8b.q4_k_m"

    def test_url(self):
        """A URL yields the stem of its path, ignoring the query string."""
        assert model_name_from_source(model_url=DEFAULT_MODEL_URL + "?download=true") == \
            "google_gemma-3-1b-it-qat-q4_k_m"

    def test_hf_repo(self):
        """A Hugging Face reference yields the repository name without the quant."""
        assert model_name_from_source(hf_repo="bartowski/Qwen2-0.5B-GGUF:q4_k_m") == "qwen2-0.5b-gguf"

    def test_no_source(self):
        with pytest.raises(ValueError):
            model_name_from_source()


class TestServerArgsValidation:
    """Range checks and incompatible combinations are rejected on construction."""

    def test_default_uses_default_model_url(self):
        """Test that default() falls back to the default model."""
        args = ServerArgs.default()
        assert args.model_url == DEFAULT_MODEL_URL
        assert args.downloads_model is True

    def test_default_keeps_given_source(self):
        args = ServerArgs.default(model="/m/a.gguf")
        assert args.model == "/m/a.gguf"
        assert args.model_url is None

    def test_exactly_one_source(self):
        """Test that zero or two model sources are rejected."""
        with pytest.raises(ValidationError):
            ServerArgs()
        with pytest.raises(ValidationError):
            ServerArgs(model="a.gguf", model_url="https://example.com/b.gguf")

    def test_invalid_hf_repo(self):
        with pytest.raises(ValidationError):
            ServerArgs(hf_repo="not a repo")

    def test_hf_file_requires_hf_repo(self):
        with pytest.raises(ValidationError):
            ServerArgs(model="a.gguf", hf_file="b.gguf")

    def test_port_range(self):
        with pytest.raises(ValidationError):
            ServerArgs(model="a.gguf", port=70000)

    def test_thread_count(self):
        """Test that -1 means auto and zero is rejected."""
        assert ServerArgs(model="a.gguf", threads=-1).threads == -1
        with pytest.raises(ValidationError):
            ServerArgs(model="a.gguf", threads=0)

    def test_ubatch_not_larger_than_batch(self):
        with pytest.raises(ValidationError):
            ServerArgs(model="a.gguf", batch_size=256, ubatch_size=512)

    def test_quantized_v_cache_requires_flash_attn(self):
        """Test that a quantized V cache needs flash attention."""
        with pytest.raises(ValidationError):
            ServerArgs(model="a.gguf", cache_type_v="q8_0")
        assert ServerArgs(model="a.gguf", cache_type_v="q8_0", flash_attn=True).cache_type_v == "q8_0"

    def test_tensor_split_with_zero_layers(self):
        with pytest.raises(ValidationError):
            ServerArgs(model="a.gguf", gpu_layers=0, tensor_split=[0.5, 0.5])

    def test_tensor_split_all_zero(self):
        with pytest.raises(ValidationError):
            ServerArgs(model="a.gguf", tensor_split=[0, 0])

    def test_draft_settings_need_draft_model(self):
        with pytest.raises(ValidationError):
            ServerArgs(model="a.gguf", draft_max=8)
        with pytest.raises(ValidationError):
            ServerArgs(model="a.gguf", model_draft="d.gguf", draft_min=9, draft_max=8)

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            ServerArgs(model="a.gguf", not_a_flag=True)


class TestServerArgsTransport:
    """Which arguments require a TCP listener."""

    def test_plain_args_use_socket(self):
        assert ServerArgs(model="a.gguf").wants_http is False

    def test_webui_and_port_need_http(self):
        assert ServerArgs(model="a.gguf", webui=True).wants_http is True
        assert ServerArgs(model="a.gguf", port=8080).wants_http is True
        assert ServerArgs(model="a.gguf", host="0.0.0.0").wants_http is True

    def test_socket_host_is_not_http(self):
        assert ServerArgs(model="a.gguf", host="/tmp/x.sock").wants_http is False


class TestServerArgsRendering:
    """Rendering to llama-server flags."""

    def test_to_argv_order_and_flags(self):
        """Test that values, flags and lists render in a stable order."""
        args = ServerArgs(
            model="/m/a.gguf", ctx_size=4096, flash_attn=True, gpu_layers=20,
            tensor_split=[0.6, 0.4], lora=["x.gguf", "y.gguf"],
        )
        argv = args.to_argv()
        assert argv[:2] == ["-m", "/m/a.gguf"]
        assert argv[argv.index("--ctx-size") + 1] == "4096"
        assert "--flash-attn" in argv
        assert argv[argv.index("--tensor-split") + 1] == "0.6,0.4"
        assert argv.count("--lora") == 2
        assert argv[-1] == "--no-webui"

    def test_false_and_none_are_omitted(self):
        argv = ServerArgs(model="a.gguf").to_argv()
        assert argv == ["-m", "a.gguf", "--no-webui"]

    def test_alias_flag(self):
        argv = ServerArgs(model="a.gguf", alias="mine").to_argv()
        assert argv[argv.index("--alias") + 1] == "mine"
        assert "-a" not in argv

    def test_webui_omits_no_webui(self):
        assert "--no-webui" not in ServerArgs(model="a.gguf", webui=True).to_argv()

    def test_with_endpoint_sets_host_and_alias(self):
        """Test that the endpoint is filled in and the alias defaults to the model name."""
        args = ServerArgs(model="/m/Tiny.gguf").with_endpoint("/tmp/s.sock")
        assert args.host == "/tmp/s.sock"
        assert args.port is None
        assert args.alias == "tiny"

    def test_with_endpoint_keeps_alias(self):
        args = ServerArgs(model="a.gguf", alias="mine").with_endpoint("127.0.0.1", 8080)
        assert args.alias == "mine"
        assert args.port == 8080


class TestApplyPlan:
    """Merging a ResourcePlan into arguments."""

    def test_single_gpu(self):
        args = ServerArgs(model="a.gguf").apply_plan(_plan(main_gpu=0))
        assert (args.gpu_layers, args.ctx_size, args.threads, args.threads_batch) == (10, 2048, 4, 8)
        assert args.main_gpu == 0
        assert args.tensor_split is None

    def test_multi_gpu(self):
        """Test that a multi-GPU plan sets tensor_split and layer split mode."""
        args = ServerArgs(model="a.gguf").apply_plan(_plan(main_gpu=1, tensor_split=[0.25, 0.75]))
        assert args.tensor_split == [0.25, 0.75]
        assert args.main_gpu == 1
        assert args.split_mode == "layer"

    def test_cpu_plan(self):
        args = ServerArgs(model="a.gguf").apply_plan(_plan(gpu_layers=0, device="cpu"))
        assert args.gpu_layers == 0
        assert args.main_gpu is None

    def test_original_unchanged(self):
        original = ServerArgs(model="a.gguf")
        original.apply_plan(_plan())
        assert original.gpu_layers is None

    def test_explicit_values_kept(self):
        """Test that a plan only fills fields the caller left unset."""
        args = ServerArgs(model="a.gguf", ctx_size=1024, gpu_layers=5, threads=2)
        planned = args.apply_plan(_plan(gpu_layers=0, ctx_size=8192, threads=12, device="cpu"))
        assert (planned.ctx_size, planned.gpu_layers, planned.threads) == (1024, 5, 2)
        assert planned.threads_batch == 8

    def test_explicit_gpu_placement_kept(self):
        args = ServerArgs(model="a.gguf", main_gpu=0).apply_plan(_plan(main_gpu=1, tensor_split=[0.25, 0.75]))
        assert args.main_gpu == 0
        assert args.tensor_split is None
