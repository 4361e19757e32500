from fastapi import Request

from app.queue import QueueChannel
from app.store import OrderStore
from app.submission import OrderSubmitter


def get_store(request: Request) -> OrderStore:
    return request.app.state.store


def get_channel(request: Request) -> QueueChannel:
    return request.app.state.channel


def get_submitter(request: Request) -> OrderSubmitter:
    return request.app.state.submitter
