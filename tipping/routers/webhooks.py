"""
Webhook Handlers for Transfer Providers

Final outcomes of payouts that were accepted asynchronously:
- M-Pesa B2C ResultURL and QueueTimeOutURL
- Flutterwave transfer events
- PesaWise transfer callbacks

Handlers always acknowledge so providers don't keep retrying; unknown
references and payouts that already finished are logged and ignored.
"""

from fastapi import APIRouter, Request, Depends
import logging
from datetime import datetime

from services.dispatcher import DisbursementDispatcher
from services.mpesa import parse_b2c_result
from services.transfers.base import TransferState
from services.transfers.flutterwave import map_flutterwave_status
from services.transfers.pesawise import map_pesawise_status
from tipping.dependencies import get_dispatcher

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = logging.getLogger(__name__)

MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


@router.post("/mpesa/b2c/result")
async def mpesa_b2c_result(request: Request, dispatcher: DisbursementDispatcher = Depends(get_dispatcher)):
    """
    Handle M-Pesa B2C result callback.

    Expected payload:
    {
      "Result": {
        "ResultCode": 0,  # 0 = success, non-zero = failure
        "ResultDesc": "The service request is processed successfully.",
        "ConversationID": "AG_20231221_...",
        "TransactionID": "QH1234567890",
        "ResultParameters": {
          "ResultParameter": [
            {"Key": "TransactionReceipt", "Value": "QH1234567890"},
            ...
          ]
        }
      }
    }
    """
    try:
        payload = await request.json()
        result = parse_b2c_result(payload)
        logger.info(
            f"M-Pesa B2C result received for {result['conversation_id']}: {result['description']}"
        )

        dispatcher.apply_provider_update(
            result["conversation_id"],
            TransferState.COMPLETED if result["success"] else TransferState.FAILED,
            detail=result["description"],
            final_reference=result["receipt"],
        )
    except Exception as e:
        logger.error(f"M-Pesa B2C result webhook error: {str(e)}")
        dispatcher.db.rollback()

    # Still return 200 to prevent M-Pesa retries
    return MPESA_ACK


@router.post("/mpesa/b2c/timeout")
async def mpesa_b2c_timeout(request: Request, dispatcher: DisbursementDispatcher = Depends(get_dispatcher)):
    """
    Handle M-Pesa B2C timeout callback.

    M-Pesa sends this if the payment sat in its queue too long; the payout
    is marked failed and can be retried.
    """
    try:
        payload = await request.json()
        result = parse_b2c_result(payload)
        logger.warning(f"M-Pesa B2C timeout for {result['conversation_id']}")

        dispatcher.apply_provider_update(
            result["conversation_id"],
            TransferState.FAILED,
            detail="Request timed out in M-Pesa queue",
        )
    except Exception as e:
        logger.error(f"M-Pesa B2C timeout webhook error: {str(e)}")
        dispatcher.db.rollback()

    return MPESA_ACK


@router.post("/flutterwave/transfer")
async def flutterwave_transfer(request: Request, dispatcher: DisbursementDispatcher = Depends(get_dispatcher)):
    """
    Handle Flutterwave transfer events (transfer.completed).

    data.id is the transfer id stored on the payout; data.reference is our
    PAYOUT-<id> reference.
    """
    try:
        payload = await request.json()
        data = payload.get("data") or {}
        state = map_flutterwave_status(data.get("status"))
        logger.info(f"Flutterwave transfer event {payload.get('event')} for {data.get('reference')}: {state.value}")

        if state != TransferState.PENDING:
            transfer_id = str(data["id"]) if data.get("id") is not None else None
            dispatcher.apply_provider_update(
                transfer_id,
                state,
                detail=data.get("complete_message") or "",
                payout_ref=data.get("reference"),
            )
    except Exception as e:
        logger.error(f"Flutterwave transfer webhook error: {str(e)}")
        dispatcher.db.rollback()

    return {"status": "received"}


@router.post("/pesawise")
async def pesawise_callback(request: Request, dispatcher: DisbursementDispatcher = Depends(get_dispatcher)):
    """Handle PesaWise transfer status callbacks."""
    try:
        payload = await request.json()
        state = map_pesawise_status(payload.get("status"))
        result_code = payload.get("resultCode")
        if state == TransferState.PENDING and result_code is not None:
            state = TransferState.COMPLETED if str(result_code) == "0" else TransferState.FAILED
        logger.info(f"PesaWise callback for {payload.get('reference')}: {state.value}")

        if state != TransferState.PENDING:
            dispatcher.apply_provider_update(
                payload.get("transactionId"),
                state,
                detail=payload.get("resultDesc") or "",
                payout_ref=payload.get("reference"),
            )
    except Exception as e:
        logger.error(f"PesaWise webhook error: {str(e)}")
        dispatcher.db.rollback()

    return {"status": "received"}


@router.get("/health")
def webhook_health():
    """
    Health check endpoint for webhook service.

    Payment processors can ping this to verify the webhook endpoint is reachable.
    """
    return {
        "status": "healthy",
        "service": "webhooks",
        "timestamp": datetime.utcnow().isoformat()
    }
