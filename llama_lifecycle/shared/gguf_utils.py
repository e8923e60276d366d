"""
Utility for reading the model metadata needed for memory sizing from GGUF files.
"""
import os
import struct
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO, Dict, Optional

from llama_lifecycle.entities.resource_plan import ModelMetadata
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.vram_estimator import VramEstimator

logger = Logger.get(__name__)

GGUF_MAGIC = b'GGUF'

# general.file_type values written by llama.cpp's quantizer
FILE_TYPES = {
    0: 'F32', 1: 'F16', 2: 'Q4_0', 3: 'Q4_1', 7: 'Q8_0', 8: 'Q5_0', 9: 'Q5_1',
    10: 'Q2_K', 11: 'Q3_K_S', 12: 'Q3_K_M', 13: 'Q3_K_L', 14: 'Q4_K_S', 15: 'Q4_K_M',
    16: 'Q5_K_S', 17: 'Q5_K_M', 18: 'Q6_K', 25: 'IQ4_NL', 30: 'IQ4_XS', 32: 'BF16',
}

# value type -> struct format for fixed-size scalars
_SCALARS = {
    0: '<B', 1: '<b', 2: '<H', 3: '<h', 4: '<I', 5: '<i',
    6: '<f', 7: '<?', 10: '<Q', 11: '<q', 12: '<d',
}
_STRING = 8
_ARRAY = 9


class GGUFError(ValueError):
    """Raised when a file is not a readable GGUF model."""


class GGUFUtils:

    @staticmethod
    def _read(f: BinaryIO, fmt: str) -> Any:
        size = struct.calcsize(fmt)
        data = f.read(size)
        if len(data) != size:
            raise GGUFError("Unexpected end of file")
        return struct.unpack(fmt, data)[0]

    @staticmethod
    def _read_string(f: BinaryIO) -> str:
        length = GGUFUtils._read(f, '<Q')
        return f.read(length).decode('utf-8', errors='replace')

    @staticmethod
    def _read_value(f: BinaryIO, value_type: int) -> Any:
        if value_type in _SCALARS:
            return GGUFUtils._read(f, _SCALARS[value_type])
        if value_type == _STRING:
            return GGUFUtils._read_string(f)
        if value_type == _ARRAY:
            item_type = GGUFUtils._read(f, '<I')
            count = GGUFUtils._read(f, '<Q')
            return [GGUFUtils._read_value(f, item_type) for _ in range(count)]
        raise GGUFError(f"Unknown GGUF value type {value_type}")

    @staticmethod
    def parse_header(f: BinaryIO, source: str = "stream") -> Dict[str, Any]:
        """
        Parse the GGUF header from a binary stream positioned at its start.

        Only the key/values and tensor infos are consumed; tensor data is never read.

        Args:
            f: Readable binary stream
            source: Name used in error messages

        Returns:
            Dictionary with 'version', 'metadata' and 'total_parameters'

        Raises:
            GGUFError: If the stream does not hold a valid GGUF header
        """
        if f.read(4) != GGUF_MAGIC:
            raise GGUFError(f"{source} is not a GGUF file")
        version = GGUFUtils._read(f, '<I')
        tensor_count = GGUFUtils._read(f, '<Q')
        kv_count = GGUFUtils._read(f, '<Q')

        metadata = {}
        for _ in range(kv_count):
            key = GGUFUtils._read_string(f)
            value_type = GGUFUtils._read(f, '<I')
            metadata[key] = GGUFUtils._read_value(f, value_type)

        total_parameters = 0
        for _ in range(tensor_count):
            GGUFUtils._read_string(f)  # name
            n_dims = GGUFUtils._read(f, '<I')
            params = 1
            for _ in range(n_dims):
                params *= GGUFUtils._read(f, '<Q')
            GGUFUtils._read(f, '<I')  # ggml type
            GGUFUtils._read(f, '<Q')  # offset
            total_parameters += params

        return {
            'version': version,
            'metadata': metadata,
            'total_parameters': total_parameters,
        }

    @staticmethod
    def read_header(model_path: str | Path) -> Dict[str, Any]:
        """Parse the GGUF header of a local file; see parse_header."""
        with open(model_path, 'rb') as f:
            return GGUFUtils.parse_header(f, str(model_path))

    @staticmethod
    def metadata_from_header(header: Dict[str, Any], file_name: str,
                             file_size: Optional[int] = None) -> ModelMetadata:
        """
        Build ModelMetadata from a parsed header.

        Args:
            header: Result of parse_header
            file_name: File name of the model, used for the name and quantization fallbacks
            file_size: Size of the weights file, when known

        Returns:
            The model facts used by the resource planner

        Raises:
            GGUFError: If the header lacks a block count
        """
        metadata = header['metadata']
        arch = metadata.get('general.architecture', 'llama')

        layer_count = metadata.get(f'{arch}.block_count')
        if not layer_count:
            raise GGUFError(f"{file_name} has no {arch}.block_count")

        file_type = metadata.get('general.file_type')
        quantization = FILE_TYPES.get(file_type) if file_type is not None else None
        if quantization is None:
            quantization = VramEstimator.extract_quantization_from_variant(file_name)

        head_count = metadata.get(f'{arch}.attention.head_count')
        head_count_kv = metadata.get(f'{arch}.attention.head_count_kv')
        gqa_factor = 1.0
        if isinstance(head_count, int) and isinstance(head_count_kv, int) and head_count > 0:
            gqa_factor = min(head_count_kv / head_count, 1.0) or 1.0

        result = ModelMetadata(
            name=metadata.get('general.name') or PurePosixPath(file_name).stem,
            parameters=max(header['total_parameters'], 1),
            layer_count=layer_count,
            quantization=quantization,
            file_size_bytes=file_size,
            context_length=metadata.get(f'{arch}.context_length'),
            hidden_size=metadata.get(f'{arch}.embedding_length'),
            gqa_factor=gqa_factor,
        )
        logger.debug(f"Read GGUF metadata for {file_name}: {result}")
        return result

    @staticmethod
    def read_metadata(model_path: str | Path) -> ModelMetadata:
        """
        Build ModelMetadata for a local GGUF file.

        Raises:
            GGUFError: If the header is unreadable or lacks a block count
        """
        path = Path(model_path)
        header = GGUFUtils.read_header(path)
        return GGUFUtils.metadata_from_header(header, path.name, os.path.getsize(path))

    @staticmethod
    def try_read_metadata(model_path: str | Path) -> Optional[ModelMetadata]:
        """Like read_metadata, but returns None for missing or unreadable files."""
        try:
            return GGUFUtils.read_metadata(model_path)
        except (OSError, GGUFError) as e:
            logger.warning(f"Could not read GGUF metadata from {model_path}: {e}")
            return None
