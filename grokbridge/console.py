import sys
import builtins as _builtins

# ============================================================
# LOGGING HELPER
# ============================================================
# Set to True for detailed logging, False for minimal logging
DEBUG = True


def _safe_print(*args, **kwargs) -> None:
    """
    Print without crashing on Windows console encoding issues.
    """
    try:
        _builtins.print(*args, **kwargs)
    except UnicodeEncodeError:
        file = kwargs.get("file") or sys.stdout
        sep = kwargs.get("sep", " ")
        end = kwargs.get("end", "\n")
        flush = bool(kwargs.get("flush", False))

        try:
            text = sep.join(str(a) for a in args) + end
            encoding = getattr(file, "encoding", None) or getattr(sys.stdout, "encoding", None) or "utf-8"
            safe_text = text.encode(encoding, errors="backslashreplace").decode(encoding, errors="ignore")
            file.write(safe_text)
            if flush:
                try:
                    file.flush()
                except Exception:
                    pass
        except Exception:
            return


def debug_print(*args, **kwargs):
    """Print debug messages only if DEBUG is True"""
    if DEBUG:
        _safe_print(*args, **kwargs)


def mask_credential(value: object, keep: int = 12) -> str:
    text = str(value or "")
    if len(text) <= keep:
        return text
    return f"{text[:keep]}..."
