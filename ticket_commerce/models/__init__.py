# Models module for Ticket Commerce API
from ticket_commerce.models.order import (
    Order, OrderItem, OrderCreate, CartSelection, ChannelContext,
    PaymentConfirmation, ItemType, OrderStatus, RefundStatus
)
from ticket_commerce.models.ticket_type import (
    TicketType, TicketTypeStatus
)
from ticket_commerce.models.redemption import (
    Hold, Code, Redemption, HoldType, CodeType
)
from ticket_commerce.models.fee_schedule import (
    FeeSchedule, FeeScheduleRange, OrganizationFees, FeeQuote
)
from ticket_commerce.models.refund import (
    Refund, RefundItem, RefundRequest, RefundItemRequest,
    RefundResponse, RefundChildPolicy
)
from ticket_commerce.models.report import (
    SalesSummaryFilters, SaleLine, RefundLine, SalesSummaryRow, SalesSummaryPage
)
