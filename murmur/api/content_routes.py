from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query, Request

from murmur.api.deps import get_runtime, protect
from murmur.api.schemas import (
    CommentRequest,
    CommentResponse,
    Envelope,
    PostCreateRequest,
    PostResponse,
    PostUpdateRequest,
)
from murmur.service.auth import AuthContext
from murmur.storage.models import Comment, Post

router = APIRouter(prefix="/v1")


def _post(post: Post, viewer_id: str) -> PostResponse:
    return PostResponse(
        id=post.id,
        author_id=post.author_id,
        header=post.header,
        images=list(post.images),
        likes_count=len(post.likes),
        liked_by_me=viewer_id in post.likes,
        created_at=post.created_at,
        updated_at=post.updated_at,
    )


def _comment(comment: Comment, viewer_id: str) -> CommentResponse:
    return CommentResponse(
        id=comment.id,
        post_id=comment.post_id,
        author_id=comment.author_id,
        content=comment.content,
        parent_comment_id=comment.parent_comment_id,
        likes_count=len(comment.likes),
        liked_by_me=viewer_id in comment.likes,
        created_at=comment.created_at,
        updated_at=comment.updated_at,
    )


# -- posts --------------------------------------------------------------------------


@router.post("/posts", response_model=Envelope, status_code=201, tags=["posts"])
async def create_post(
    body: PostCreateRequest, request: Request, principal: AuthContext = Depends(protect)
):
    runtime = get_runtime(request)
    post = await runtime.content.create_post(
        principal.user, header=body.header, images=body.images
    )
    return Envelope(status="ok", data=_post(post, principal.user_id))


@router.patch("/posts/{post_id}", response_model=Envelope, tags=["posts"])
async def update_post(
    body: PostUpdateRequest,
    request: Request,
    post_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    post = await runtime.content.update_post(
        principal.user, post_id, header=body.header, images=body.images
    )
    return Envelope(status="ok", data=_post(post, principal.user_id))


@router.delete("/posts/{post_id}", response_model=Envelope, tags=["posts"])
async def delete_post(
    request: Request,
    post_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    await runtime.content.delete_post(principal.user, post_id)
    return Envelope(status="ok", data={"message": "post deleted"})


@router.get("/users/{user_id}/posts", response_model=Envelope, tags=["posts"])
async def list_user_posts(
    request: Request,
    user_id: str = Path(..., max_length=64),
    limit: int = Query(50, ge=1, le=200),
    principal: AuthContext = Depends(protect),
):
    """List a user's posts, newest first.

    Requires a follow edge in either direction unless the caller is the author.
    """
    runtime = get_runtime(request)
    posts = await runtime.content.user_posts(principal.user, user_id, limit=limit)
    return Envelope(status="ok", data={"posts": [_post(p, principal.user_id) for p in posts]})


@router.get("/feed", response_model=Envelope, tags=["posts"])
async def feed(
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    posts = await runtime.content.feed(principal.user, limit=limit)
    return Envelope(status="ok", data={"posts": [_post(p, principal.user_id) for p in posts]})


@router.post("/posts/{post_id}/like", response_model=Envelope, tags=["posts"])
async def like_post(
    request: Request,
    post_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    post = await runtime.content.like_post(principal.user, post_id)
    return Envelope(status="ok", data=_post(post, principal.user_id))


@router.delete("/posts/{post_id}/like", response_model=Envelope, tags=["posts"])
async def unlike_post(
    request: Request,
    post_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    post = await runtime.content.unlike_post(principal.user, post_id)
    return Envelope(status="ok", data=_post(post, principal.user_id))


# -- comments -----------------------------------------------------------------------


@router.post(
    "/posts/{post_id}/comments", response_model=Envelope, status_code=201, tags=["comments"]
)
async def create_comment(
    body: CommentRequest,
    request: Request,
    post_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    comment = await runtime.content.create_comment(principal.user, post_id, body.content)
    return Envelope(status="ok", data=_comment(comment, principal.user_id))


@router.get("/posts/{post_id}/comments", response_model=Envelope, tags=["comments"])
async def list_comments(
    request: Request,
    post_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    comments = await runtime.content.list_comments(principal.user, post_id)
    return Envelope(
        status="ok", data={"comments": [_comment(c, principal.user_id) for c in comments]}
    )


@router.post(
    "/comments/{comment_id}/replies", response_model=Envelope, status_code=201, tags=["comments"]
)
async def reply_to_comment(
    body: CommentRequest,
    request: Request,
    comment_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    """Reply to a comment.

    The caller needs a follow edge with both the post author and the author
    of the comment being replied to, and neither may have blocked the caller.
    """
    runtime = get_runtime(request)
    reply = await runtime.content.reply(principal.user, comment_id, body.content)
    return Envelope(status="ok", data=_comment(reply, principal.user_id))


@router.patch("/comments/{comment_id}", response_model=Envelope, tags=["comments"])
async def update_comment(
    body: CommentRequest,
    request: Request,
    comment_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    comment = await runtime.content.update_comment(principal.user, comment_id, body.content)
    return Envelope(status="ok", data=_comment(comment, principal.user_id))


@router.delete("/comments/{comment_id}", response_model=Envelope, tags=["comments"])
async def delete_comment(
    request: Request,
    comment_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    await runtime.content.delete_comment(principal.user, comment_id)
    return Envelope(status="ok", data={"message": "comment deleted"})


@router.post("/comments/{comment_id}/like", response_model=Envelope, tags=["comments"])
async def like_comment(
    request: Request,
    comment_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    comment = await runtime.content.like_comment(principal.user, comment_id)
    return Envelope(status="ok", data=_comment(comment, principal.user_id))


@router.delete("/comments/{comment_id}/like", response_model=Envelope, tags=["comments"])
async def unlike_comment(
    request: Request,
    comment_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(protect),
):
    runtime = get_runtime(request)
    comment = await runtime.content.unlike_comment(principal.user, comment_id)
    return Envelope(status="ok", data=_comment(comment, principal.user_id))
