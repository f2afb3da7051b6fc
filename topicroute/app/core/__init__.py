SERVICE_NAME = "topicroute"
