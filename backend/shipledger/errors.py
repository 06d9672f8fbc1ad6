import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


DEFAULT_MESSAGES: dict[str, str] = {
    "AUTH_REQUIRED": "انتهت جلستك. سجّل الدخول لإكمال العملية.",
    "PERMISSION_DENIED": "لا تملك صلاحية لإتمام هذه العملية.",
    "SHIPMENT_NOT_FOUND": "الشحنة غير موجودة. تأكد من اختيار شحنة صحيحة.",
    "SHIPMENT_LOCKED": "لا يمكن إضافة دفعات على شحنة مغلقة أو مؤرشفة.",
    "SHIPMENT_PAYLOAD_INVALID": "البيانات الأساسية للشحنة غير صالحة",
    "SHIPMENT_ITEMS_INVALID": "بيانات البنود غير صالحة",
    "SUPPLIER_NOT_FOUND": "المورد غير موجود",
    "PAYMENT_DATE_INVALID": "تاريخ الدفع غير صالح. الرجاء اختيار تاريخ بصيغة YYYY-MM-DD.",
    "PAYMENT_PAYLOAD_INVALID": "بيانات الدفعة غير مكتملة أو غير صحيحة. راجع الحقول المطلوبة.",
    "PAYMENT_RATE_MISSING": "يلزم سعر صرف صحيح لدفعات RMB. أدخل سعر RMB→EGP لليوم.",
    "PAYMENT_CURRENCY_UNSUPPORTED": "عملة الدفع غير مدعومة. استخدم EGP أو RMB فقط.",
    "PAYMENT_OVERPAY": "لا يمكن دفع مبلغ أكبر من المتبقي على الشحنة. راجع الرصيد قبل الدفع.",
    "PAYMENT_TOTAL_MISSING": "لا يمكن تسجيل دفعة قبل حساب إجمالي تكلفة الشحنة. راجع بيانات التكلفة للشحنة.",
    "VALIDATION_FAILED": "البيانات المرسلة غير صالحة. راجع الحقول المطلوبة.",
    "UNKNOWN_ERROR": "حدث خطأ غير متوقع.",
}


class ApiError(Exception):
    """Error with a machine code and an Arabic message for the client."""

    def __init__(self, code: str, message: str | None = None, status: int = 400, details: dict | None = None):
        self.code = code
        self.message = message or DEFAULT_MESSAGES.get(code) or DEFAULT_MESSAGES["UNKNOWN_ERROR"]
        self.status = status
        self.details = details
        super().__init__(self.message)

    def to_body(self) -> dict:
        return {"ok": False, "error": {"code": self.code, "message": self.message, "details": self.details}}


def _validation_code(request: Request, exc: RequestValidationError) -> str:
    path = request.url.path.rstrip("/")
    locs = [[str(p) for p in err.get("loc", ())] for err in exc.errors()]
    if path.endswith("/payments") and request.method == "POST":
        if any("payment_date" in loc for loc in locs):
            return "PAYMENT_DATE_INVALID"
        return "PAYMENT_PAYLOAD_INVALID"
    if path.startswith("/shipments") and request.method in ("POST", "PATCH"):
        if locs and all("items" in loc for loc in locs):
            return "SHIPMENT_ITEMS_INVALID"
        return "SHIPMENT_PAYLOAD_INVALID"
    return "VALIDATION_FAILED"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        code = _validation_code(request, exc)
        fields = [".".join(str(p) for p in e.get("loc", ()) if p != "body") for e in exc.errors()]
        logger.info("validation failed on %s %s: %s", request.method, request.url.path, fields)
        err = ApiError(code, status=400, details={"fields": fields})
        return JSONResponse(status_code=400, content=err.to_body())
