"""
SMS app: Twilio webhook that answers technician questions by text message.
"""
