from common.ids import generate_session_id, unique_session_id
from common.jsonio import load_json, atomic_write_json, remove_file

__all__ = [
    "generate_session_id",
    "unique_session_id",
    "load_json",
    "atomic_write_json",
    "remove_file",
]
