from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ....host.site import SqlUserDirectory
from ....schemas.connector import DiscourseUserRecordOut
from ....services.connector import DiscourseUserConnector
from ....services.link_store import IdentityLinkStore
from ...deps import get_current_client, get_db_session

router = APIRouter(prefix="/v1/connector", tags=["connector"])


@router.get("/users/{local_id}", response_model=DiscourseUserRecordOut)
def get_discourse_user_record(
    local_id: int,
    session: Session = Depends(get_db_session),
    _client: dict = Depends(get_current_client),
) -> DiscourseUserRecordOut:
    store = IdentityLinkStore(session, SqlUserDirectory(session))
    record = DiscourseUserConnector(store).get_discourse_user_record(local_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No Discourse record for this user")
    return DiscourseUserRecordOut.model_validate(record)
