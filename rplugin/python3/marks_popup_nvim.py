# Discovered by :UpdateRemotePlugins; the plugin itself lives in marks_popup
# at the repository root, which the remote plugin host does not put on the
# path. pynvim must be installed for the host's python3.
import os
import sys

_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if _ROOT not in sys.path:
    sys.path.append(_ROOT)

from marks_popup import MarksPopupPlugin  # noqa: E402,F401
