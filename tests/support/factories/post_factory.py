"""Post data factories for test data generation.

Generates Post model instances with deterministic defaults and override
support for specific test scenarios.
"""

import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.models import Post, PostStatus


def create_post(
    post_id: str | None = None,
    title: str | None = None,
    status: PostStatus = PostStatus.SELECTED,
    **kwargs,
) -> Post:
    """Create a Post model instance with sensible defaults.

    Args:
        post_id: Source identifier (default: auto-generated "post_xxx").
        title: Post title (default: derived from post_id).
        status: Pipeline status (default: selected).
        **kwargs: Additional column values.

    Returns:
        Post model instance (not yet added to a session).
    """
    if post_id is None:
        post_id = f"post_{uuid.uuid4().hex[:8]}"

    post = Post(
        id=post_id,
        title=title or f"How I changed my life: {post_id}",
        content=kwargs.pop(
            "content",
            "I started waking up at 5am and everything changed. Here is what I learned.",
        ),
        author=kwargs.pop("author", "test_author"),
        subreddit=kwargs.pop("subreddit", "getdisciplined"),
        score=kwargs.pop("score", 1200),
        upvotes=kwargs.pop("upvotes", 1100),
        comments=kwargs.pop("comments", 85),
        url=kwargs.pop("url", f"https://reddit.com/r/getdisciplined/{post_id}"),
        status=status,
    )
    for key, value in kwargs.items():
        if hasattr(post, key):
            setattr(post, key, value)
    return post


async def insert_posts(
    session_factory: async_sessionmaker[AsyncSession],
    *posts: Post,
) -> list[Post]:
    """Persist posts in one transaction and return them."""
    async with session_factory() as session:
        session.add_all(posts)
        await session.commit()
    return list(posts)
