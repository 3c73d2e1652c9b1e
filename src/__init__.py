"""SLA Engine application package."""
