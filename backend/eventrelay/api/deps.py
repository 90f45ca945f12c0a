"""Request dependencies shared by the REST routers."""

from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from eventrelay.runtime import Runtime


async def get_current_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
	"""Identity is asserted by the upstream gateway through ``X-User-Id``."""
	user_id = (x_user_id or "").strip()
	if not user_id:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_user")
	return user_id


def get_runtime(request: Request) -> Runtime:
	return request.app.state.runtime
