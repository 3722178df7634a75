# Data factories for test data generation

from tests.support.factories.post_factory import create_post, insert_posts
from tests.support.factories.script_factory import (
    PASSING_CONTENT,
    create_failing_script,
    create_passing_script,
    create_passing_script_data,
)

__all__ = [
    # Post factories
    "create_post",
    "insert_posts",
    # Script factories
    "PASSING_CONTENT",
    "create_passing_script",
    "create_passing_script_data",
    "create_failing_script",
]
