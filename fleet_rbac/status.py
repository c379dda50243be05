class ExitCodes:
    SUCCESS = 0
    ERROR = 1
    CONFIG_NOT_FOUND = 2
