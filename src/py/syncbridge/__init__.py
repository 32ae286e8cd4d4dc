from .model import ProducedResponse, RequestState, SeekUnsupported  # NOQA: F401
from .input import ReplayBuffer  # NOQA: F401
from .proxy import Proxy  # NOQA: F401
from .wsgi import WSGIHandler  # NOQA: F401
from .server import ServerOptions, run  # NOQA: F401


# EOF
