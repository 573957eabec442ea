import logging

#-----------------------------------------------------------------------------

class LogConfig:
    def __init__(
        self,
        name        : str = "",
        dir         : str = "",
        level       : int = logging.INFO,
        secret_key  : str = ""
    ):
        self.name       = name
        self.dir        = dir if dir else "logs"
        self.level      = level
        self.secret_key = secret_key


    def print(self):
        target = f"{self.dir}/{self.name}" if self.name else "console"
        print(f"log             : {target}:{logging.getLevelName(self.level)}")

#-----------------------------------------------------------------------------
