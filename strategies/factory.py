"""Maps a channel's strategy selector to a parser implementation."""

from typing import Dict, Type

from models.errors import ConfigurationError
from models.upload import StrategyKind, UploadConfiguration
from strategies.base import UploadStrategy
from strategies.form import FormUploadStrategy
from strategies.multipart import StreamingUploadStrategy, TempFileUploadStrategy

STRATEGIES: Dict[StrategyKind, Type[UploadStrategy]] = {
    StrategyKind.FORM: FormUploadStrategy,
    StrategyKind.TEMPFILE: TempFileUploadStrategy,
    StrategyKind.STREAMING: StreamingUploadStrategy,
}


def create_upload_strategy(config: UploadConfiguration) -> UploadStrategy:
    """
    Build the upload strategy a channel configuration selects.

    Raises:
        ConfigurationError: If the selector names no known strategy
    """
    strategy_class = STRATEGIES.get(config.upload_strategy)
    if strategy_class is None:
        raise ConfigurationError(
            f"Unknown upload strategy '{config.upload_strategy}'", error_code="INVALID_STRATEGY"
        )
    return strategy_class(config)
