# run.py
import uvicorn
import logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logging.getLogger("automata.timers").setLevel(logging.DEBUG)
logging.getLogger("mqtt").setLevel(logging.INFO)

uvicorn.run("app.main:app", host="0.0.0.0", port=8080, reload=False)
