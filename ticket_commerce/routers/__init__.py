# Routers module for Ticket Commerce API
from ticket_commerce.routers import orders
from ticket_commerce.routers import reports
