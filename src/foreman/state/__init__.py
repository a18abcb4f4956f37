from foreman.state.store import ProgressStore, new_run_id

__all__ = ["ProgressStore", "new_run_id"]
