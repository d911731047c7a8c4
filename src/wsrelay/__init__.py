from ._hub import BroadcastHub as BroadcastHub
from ._messages import ConsumerUnavailable as ConsumerUnavailable
from ._messages import Direction as Direction
from ._messages import HubClosedError as HubClosedError
from ._messages import HubError as HubError
from ._messages import Message as Message
from ._messages import RelayError as RelayError
from ._messages import SendFailed as SendFailed
from ._messages import SessionClosedError as SessionClosedError
from ._messages import SessionId as SessionId
from ._relay import RelayServer as RelayServer
from ._session import Session as Session
from ._session import Transport as Transport

__version__ = "0.1.0"
