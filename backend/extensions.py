from flask_jwt_extended import JWTManager
from flask_babel import Babel
from flask_cors import CORS

jwt = JWTManager()
babel = Babel()
cors = CORS()
