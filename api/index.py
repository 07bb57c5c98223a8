from mangum import Mangum

from wallet.api import create_app

app = create_app(start_worker=False)
app.root_path = "/api"

# Lambda invocations must not run startup/shutdown: the platform outlives each request.
handler = Mangum(app, lifespan="off")
